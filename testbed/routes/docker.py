"""Docker maintenance routes (images, out-of-band container control)."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from testbed.dependencies import get_driver
from testbed.errors import EnvironmentDriverError
from testbed.schemas.docker import ContainerList, ImageList, ImagePull, ImagePullResponse, OsImage
from testbed.services.docker_driver import DockerDriver
from testbed.services.images import ImageResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/docker", tags=["docker"])


def _driver_error(e: EnvironmentDriverError) -> HTTPException:
    logger.error(str(e))
    return HTTPException(status_code=404 if e.not_found else 502, detail=str(e))


@router.get("/images", response_model=ImageList)
async def list_images(driver: DockerDriver = Depends(get_driver)):
    """List local images and which pinned OS images are available."""
    try:
        images = await driver.list_images()
    except EnvironmentDriverError as e:
        raise _driver_error(e)

    local_tags = {tag for image in images for tag in image["repo_tags"]}
    os_images = [
        OsImage(os=os_key, image=image, available=image in local_tags)
        for os_key, image in ImageResolver().catalogue().items()
    ]

    return ImageList(count=len(images), images=images, os_images=os_images)


@router.post("/images/pull", response_model=ImagePullResponse)
async def pull_image(
    data: ImagePull,
    driver: DockerDriver = Depends(get_driver),
):
    """Pull an image by reference or by pinned OS identifier."""
    if data.os:
        image = ImageResolver().catalogue().get(data.os.lower())
    else:
        image = data.image

    if not image:
        raise HTTPException(status_code=400, detail="Either image or a valid OS key is required")

    try:
        pulled = await driver.pull_image(image)
    except EnvironmentDriverError as e:
        raise _driver_error(e)

    return ImagePullResponse(message=f"Image {pulled} pulled successfully", image=pulled)


@router.get("/containers", response_model=ContainerList)
async def list_containers(
    all: bool = True,
    driver: DockerDriver = Depends(get_driver),
):
    """List containers (including stopped ones unless all=false)."""
    try:
        containers = await driver.list_containers(all=all)
    except EnvironmentDriverError as e:
        raise _driver_error(e)

    return ContainerList(count=len(containers), containers=containers)


@router.post("/containers/{container_id}/stop")
async def stop_container(
    container_id: str,
    driver: DockerDriver = Depends(get_driver),
):
    """Stop a container. A run using it fails or completes through its normal path."""
    try:
        await driver.stop_environment(container_id)
    except EnvironmentDriverError as e:
        raise _driver_error(e)

    return {"message": "Container stopped", "container_id": container_id}


@router.delete("/containers/{container_id}")
async def remove_container(
    container_id: str,
    force: bool = False,
    driver: DockerDriver = Depends(get_driver),
):
    """Remove a container."""
    try:
        await driver.remove_environment(container_id, force=force)
    except EnvironmentDriverError as e:
        raise _driver_error(e)

    return {"message": "Container removed", "container_id": container_id}
