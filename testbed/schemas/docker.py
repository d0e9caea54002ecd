"""Docker maintenance schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class OsImage(BaseModel):
    """A pinned OS image and whether it is present locally."""

    os: str
    image: str
    available: bool


class ImageList(BaseModel):
    count: int
    images: List[Dict[str, Any]]
    os_images: List[OsImage]


class ImagePull(BaseModel):
    """Pull by explicit image reference or by pinned OS identifier."""

    image: Optional[str] = None
    os: Optional[str] = None


class ImagePullResponse(BaseModel):
    message: str
    image: str


class ContainerList(BaseModel):
    count: int
    containers: List[Dict[str, Any]]
