"""Per-run workspace directories with the script and entrypoint wrapper."""

import logging
import os
from pathlib import Path
from typing import Optional

from testbed.config import settings
from testbed.errors import WorkspaceError
from testbed.services.platforms import (
    ENTRYPOINT_NAME,
    OUTPUT_DIR,
    SCRIPT_BASENAME,
    SCRIPT_LOG_NAME,
    Platform,
)

logger = logging.getLogger(__name__)

ENTRYPOINT_TEMPLATE = """#!/bin/bash

SCRIPT_PATH={mount}/{script}
OUTPUT_DIR={mount}/{output}

# Make script executable
chmod +x "$SCRIPT_PATH"

# Create output directory if it doesn't exist
mkdir -p "$OUTPUT_DIR"

# Execute script and capture output
{{
  echo "=== Running test script: $SCRIPT_PATH ==="
  echo "=== Start time: $(date) ==="
  "$SCRIPT_PATH" 2>&1
  EXIT_CODE=$?
  # Script output may not end with a newline
  echo ""
  echo "=== End time: $(date) ==="
  echo "=== Exit code: $EXIT_CODE ==="
  exit $EXIT_CODE
}} 2>&1 | tee "$OUTPUT_DIR/{log}"

exit "${{PIPESTATUS[0]}}"
"""


def render_entrypoint(platform: Platform, script_filename: str) -> str:
    """
    Render the bash wrapper that tees script output to the durable log.

    Args:
        platform: Target platform (provides the mount point)
        script_filename: Script file name inside the workspace

    Returns:
        Entrypoint script text
    """
    return ENTRYPOINT_TEMPLATE.format(
        mount=platform.mount_point,
        script=script_filename,
        output=OUTPUT_DIR,
        log=SCRIPT_LOG_NAME,
    )


class WorkspaceManager:
    """Creates and cleans up the directory each run executes from."""

    def __init__(self, root: Optional[str] = None):
        """Initialize the manager."""
        self.root = Path(root or settings.RESULTS_DIR)

    def path_for(self, run_id: str) -> Path:
        return self.root / run_id

    def prepare(
        self,
        run_id: str,
        script_content: str,
        script_type: str,
        platform: Platform,
    ) -> Path:
        """
        Materialize a run's workspace.

        Args:
            run_id: Run identifier, used as the directory name
            script_content: User script text
            script_type: Script file extension
            platform: Target platform

        Returns:
            Absolute workspace path

        Raises:
            WorkspaceError: If the directory or files cannot be written
        """
        workspace = self.path_for(run_id).resolve()
        script_filename = platform.script_filename(script_type)

        try:
            (workspace / OUTPUT_DIR).mkdir(parents=True, exist_ok=True)

            script_path = workspace / script_filename
            script_path.write_text(script_content, encoding="utf-8", newline="\n")
            os.chmod(script_path, 0o755)

            if platform.uses_entrypoint:
                entrypoint_path = workspace / ENTRYPOINT_NAME
                entrypoint_path.write_text(
                    render_entrypoint(platform, script_filename),
                    encoding="utf-8",
                    newline="\n",
                )
                os.chmod(entrypoint_path, 0o755)

            # Containers may run as a different uid and must write the log
            os.chmod(workspace / OUTPUT_DIR, 0o777)
        except OSError as e:
            raise WorkspaceError(f"Failed to prepare workspace for run {run_id}: {e}") from e

        logger.info(f"Prepared workspace {workspace} ({platform.kind.value})")
        return workspace

    def teardown(self, workspace: Path) -> None:
        """
        Remove the materialized script and entrypoint. Idempotent, never raises.

        Captured output under output/ is kept; it belongs to the run record.

        Args:
            workspace: Path returned by prepare()
        """
        workspace = Path(workspace)
        if not workspace.is_dir():
            return

        try:
            entries = [p for p in workspace.iterdir() if p.is_file()]
        except OSError as e:
            logger.warning(f"Failed to list workspace {workspace}: {e}")
            return

        for path in entries:
            if path.name == ENTRYPOINT_NAME or path.stem == SCRIPT_BASENAME:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Failed to remove {path}: {e}")

        logger.info(f"Tore down workspace {workspace}")
