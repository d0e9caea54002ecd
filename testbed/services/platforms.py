"""Target platform variants carrying all OS-specific run behavior."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

SCRIPT_BASENAME = "test-script"
ENTRYPOINT_NAME = "entrypoint.sh"
OUTPUT_DIR = "output"
SCRIPT_LOG_NAME = "script_output.log"
STREAM_DUMP_NAME = "container_logs.txt"


class PlatformKind(str, Enum):
    WINDOWS = "windows"
    POSIX = "posix"


@dataclass(frozen=True)
class Platform:
    """
    A closed set of target kinds, resolved once per run.

    The kind decides the container command, whether an entrypoint wrapper
    is generated, and where the workspace is mounted inside the container.
    """

    kind: PlatformKind
    mount_point: str
    default_script_type: str

    @property
    def uses_entrypoint(self) -> bool:
        return self.kind is PlatformKind.POSIX

    def script_filename(self, script_type: str) -> str:
        return f"{SCRIPT_BASENAME}.{script_type}"

    def build_command(self, script_filename: str) -> List[str]:
        """
        Build the container command for a script.

        Args:
            script_filename: Script file name inside the workspace

        Returns:
            Command argv for the container
        """
        if self.kind is PlatformKind.WINDOWS:
            script_path = f"{self.mount_point}\\{script_filename}"
            return [
                "powershell",
                "-Command",
                (
                    f"& {{ & '{script_path}'; $code = $LASTEXITCODE; "
                    "if ($null -eq $code) { $code = 0 }; "
                    'Write-Output "=== Exit code: $code ==="; exit $code }'
                ),
            ]
        return ["/bin/bash", "-c", f"{self.mount_point}/{ENTRYPOINT_NAME}"]

    def bind(self, host_path: str) -> List[str]:
        """Bind mount specs for the run workspace."""
        return [f"{host_path}:{self.mount_point}"]


WINDOWS = Platform(kind=PlatformKind.WINDOWS, mount_point="C:\\scripts", default_script_type="ps1")
POSIX = Platform(kind=PlatformKind.POSIX, mount_point="/scripts", default_script_type="sh")


def platform_for(os_identifier: str, image: Optional[str] = None) -> Platform:
    """
    Resolve the target platform for an OS identifier.

    An explicit image naming a Windows base also selects the Windows variant,
    since such a container cannot run the bash entrypoint.

    Args:
        os_identifier: Caller-supplied OS identifier
        image: Resolved image reference, if known

    Returns:
        WINDOWS or POSIX
    """
    if "windows" in (os_identifier or "").lower():
        return WINDOWS
    if image and "windows" in image.lower():
        return WINDOWS
    return POSIX
