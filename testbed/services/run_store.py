"""File-resident run records: one directory per run."""

import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from testbed.config import settings
from testbed.errors import RunNotFoundError
from testbed.models.run import Run, Verdict
from testbed.services.platforms import OUTPUT_DIR, SCRIPT_LOG_NAME, STREAM_DUMP_NAME

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
RESULTS_FILE = "results.json"


def _atomic_write(path: Path, content: str) -> None:
    """Write via a temp file and rename so readers never see a partial file."""
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class RunStore:
    """Durable run records. Each run is written by its own orchestrator task only."""

    def __init__(self, root: Optional[str] = None):
        """Initialize the store."""
        self.root = Path(root or settings.RESULTS_DIR)

    def path_for(self, run_id: str) -> Path:
        """
        Directory of a run.

        Raises:
            RunNotFoundError: If run_id is not a valid run identifier
        """
        try:
            uuid.UUID(run_id)
        except (ValueError, TypeError):
            raise RunNotFoundError(f"Run {run_id} not found")
        return self.root / run_id

    def save(self, run: Run) -> None:
        """Atomically (re)write the run's metadata file."""
        run_dir = self.path_for(run.id)
        run_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(run_dir / METADATA_FILE, run.model_dump_json(indent=2))

    def save_result(self, run_id: str, verdict: Verdict) -> None:
        """Write the classifier verdict for a completed run."""
        path = self.path_for(run_id) / RESULTS_FILE
        if path.exists():
            logger.warning(f"Result for run {run_id} already written, keeping the first one")
            return
        _atomic_write(path, verdict.model_dump_json(indent=2))

    def save_stream_dump(self, run_id: str, text: str) -> None:
        """Persist the raw text captured from the attach stream."""
        output_dir = self.path_for(run_id) / OUTPUT_DIR
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / STREAM_DUMP_NAME).write_text(text, encoding="utf-8")

    def get(self, run_id: str) -> Run:
        """
        Load a run record.

        Raises:
            RunNotFoundError: If no readable record exists
        """
        path = self.path_for(run_id) / METADATA_FILE
        try:
            return Run.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise RunNotFoundError(f"Run {run_id} not found")
        except (OSError, PydanticValidationError) as e:
            logger.warning(f"Unreadable metadata for run {run_id}: {e}")
            raise RunNotFoundError(f"Run {run_id} metadata unreadable")

    def get_result(self, run_id: str) -> Optional[Verdict]:
        path = self.path_for(run_id) / RESULTS_FILE
        if not path.exists():
            return None
        try:
            return Verdict.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            logger.warning(f"Unreadable result for run {run_id}: {e}")
            return None

    def list(self) -> List[Run]:
        """All readable run records, newest first."""
        if not self.root.is_dir():
            return []

        runs = []
        for entry in self.root.iterdir():
            metadata = entry / METADATA_FILE
            if not metadata.is_file():
                continue
            try:
                runs.append(Run.model_validate_json(metadata.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable run record {entry.name}: {e}")

        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs

    def read_script_log(self, run_id: str) -> Optional[str]:
        """Durable entrypoint log, or None if missing or empty."""
        path = self.path_for(run_id) / OUTPUT_DIR / SCRIPT_LOG_NAME
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        return text if text.strip() else None

    def read_logs(self, run_id: str) -> str:
        """
        Captured output of a run.

        Prefers the durable entrypoint log and falls back to the raw stream dump.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run_dir = self.path_for(run_id)
        if not (run_dir / METADATA_FILE).exists():
            raise RunNotFoundError(f"Run {run_id} not found")

        script_log = self.read_script_log(run_id)
        if script_log is not None:
            return script_log

        dump = run_dir / OUTPUT_DIR / STREAM_DUMP_NAME
        if dump.exists():
            return dump.read_text(encoding="utf-8", errors="replace")
        return ""

    def delete(self, run_id: str) -> None:
        """Remove a run's directory and everything in it."""
        run_dir = self.path_for(run_id)
        if not run_dir.exists():
            raise RunNotFoundError(f"Run {run_id} not found")
        shutil.rmtree(run_dir)
        logger.info(f"Purged run {run_id}")
