"""OS identifier to container image resolution."""

import logging
from typing import Dict, Optional

from testbed.config import settings

logger = logging.getLogger(__name__)

# Pinned images for known OS identifiers
OS_IMAGES: Dict[str, str] = {
    "windows-2016": "mcr.microsoft.com/windows/servercore:ltsc2016",
    "windows-2019": "mcr.microsoft.com/windows/servercore:ltsc2019",
    "windows-2022": "mcr.microsoft.com/windows/servercore:ltsc2022",
    "ubuntu-20.04": "ubuntu:20.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "centos-7": "centos:7",
    "centos-8": "quay.io/centos/centos:stream8",
    "debian-10": "debian:10",
    "debian-11": "debian:11",
    "rhel-8": "registry.access.redhat.com/ubi8/ubi",
    "rhel-9": "registry.access.redhat.com/ubi9/ubi",
}

# Newest supported image per family, checked in order
FAMILY_DEFAULTS = (
    ("windows", "mcr.microsoft.com/windows/servercore:ltsc2022"),
    ("ubuntu", "ubuntu:22.04"),
    ("centos", "quay.io/centos/centos:stream8"),
    ("debian", "debian:11"),
    ("rhel", "registry.access.redhat.com/ubi8/ubi"),
)


class ImageResolver:
    """Maps logical OS identifiers to concrete image references."""

    def __init__(self, default_image: Optional[str] = None):
        """Initialize the resolver."""
        self.default_image = default_image or settings.DEFAULT_IMAGE

    def resolve(self, os_identifier: Optional[str], image_override: Optional[str] = None) -> str:
        """
        Resolve the image for a run. Never fails.

        Args:
            os_identifier: Caller-supplied OS identifier, matched case-insensitively
            image_override: Explicit image; returned unchanged when non-empty

        Returns:
            Image reference
        """
        if image_override:
            return image_override

        key = (os_identifier or "").strip().lower()
        if key in OS_IMAGES:
            return OS_IMAGES[key]

        for family, image in FAMILY_DEFAULTS:
            if family in key:
                logger.info(f"No pinned image for '{os_identifier}', using {family} default {image}")
                return image

        logger.info(f"Unknown OS '{os_identifier}', using global default {self.default_image}")
        return self.default_image

    def catalogue(self) -> Dict[str, str]:
        """Return a copy of the pinned OS to image table."""
        return dict(OS_IMAGES)
