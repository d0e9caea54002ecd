"""Tests for run workspace preparation and teardown."""

import os
import shutil
import stat
import subprocess
import uuid

import pytest

from testbed.errors import WorkspaceError
from testbed.services.classifier import classify
from testbed.services.platforms import POSIX, WINDOWS, Platform, PlatformKind
from testbed.services.workspace import WorkspaceManager, render_entrypoint


def _is_executable(path):
    return bool(path.stat().st_mode & stat.S_IXUSR)


def test_prepare_posix(tmp_path):
    """POSIX workspaces get the script, the entrypoint and output/."""
    manager = WorkspaceManager(str(tmp_path))
    run_id = str(uuid.uuid4())

    workspace = manager.prepare(run_id, "#!/bin/bash\necho hi\n", "sh", POSIX)

    assert workspace == (tmp_path / run_id).resolve()
    assert (workspace / "output").is_dir()
    assert (workspace / "test-script.sh").read_text() == "#!/bin/bash\necho hi\n"
    assert _is_executable(workspace / "test-script.sh")
    assert _is_executable(workspace / "entrypoint.sh")


def test_prepare_windows_has_no_entrypoint(tmp_path):
    manager = WorkspaceManager(str(tmp_path))

    workspace = manager.prepare(str(uuid.uuid4()), "Write-Output 'hi'", "ps1", WINDOWS)

    assert (workspace / "test-script.ps1").exists()
    assert not (workspace / "entrypoint.sh").exists()
    assert (workspace / "output").is_dir()


def test_entrypoint_brackets_output():
    """The wrapper tees to the durable log and exits with the script's code."""
    entrypoint = render_entrypoint(POSIX, "test-script.sh")

    assert entrypoint.startswith("#!/bin/bash")
    assert "SCRIPT_PATH=/scripts/test-script.sh" in entrypoint
    assert '=== Start time: $(date) ===' in entrypoint
    assert entrypoint.index("=== End time") < entrypoint.index("=== Exit code: $EXIT_CODE ===")
    assert 'tee "$OUTPUT_DIR/script_output.log"' in entrypoint
    assert 'exit "${PIPESTATUS[0]}"' in entrypoint


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
def test_entrypoint_execution(tmp_path):
    """Running the wrapper keeps the script's exit code and one marker per line."""
    platform = Platform(kind=PlatformKind.POSIX, mount_point=str(tmp_path), default_script_type="sh")
    (tmp_path / "test-script.sh").write_text("#!/bin/bash\necho 'Error: boom'\nprintf done\nexit 3\n")
    entrypoint = tmp_path / "entrypoint.sh"
    entrypoint.write_text(render_entrypoint(platform, "test-script.sh"))

    completed = subprocess.run(["bash", str(entrypoint)], capture_output=True, text=True, timeout=30)

    assert completed.returncode == 3
    lines = (tmp_path / "output" / "script_output.log").read_text().splitlines()
    assert lines[0] == f"=== Running test script: {tmp_path}/test-script.sh ==="
    assert lines[1].startswith("=== Start time: ")
    assert "done" in lines
    assert lines[-2].startswith("=== End time: ") and lines[-2].endswith(" ===")
    assert lines[-1] == "=== Exit code: 3 ==="

    verdict = classify(completed.stdout)
    assert verdict.exit_code == 3
    assert verdict.error_lines == ["Error: boom"]


def test_prepare_fails_when_root_unusable(tmp_path):
    """A root that cannot hold directories raises WorkspaceError."""
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    manager = WorkspaceManager(str(blocker))

    with pytest.raises(WorkspaceError):
        manager.prepare(str(uuid.uuid4()), "echo hi", "sh", POSIX)


def test_teardown_is_idempotent(tmp_path):
    """Teardown removes inputs, keeps output/, and can run twice."""
    manager = WorkspaceManager(str(tmp_path))
    workspace = manager.prepare(str(uuid.uuid4()), "echo hi", "sh", POSIX)
    (workspace / "output" / "script_output.log").write_text("hi\n")
    (workspace / "metadata.json").write_text("{}")

    manager.teardown(workspace)
    manager.teardown(workspace)

    assert not (workspace / "test-script.sh").exists()
    assert not (workspace / "entrypoint.sh").exists()
    assert (workspace / "output" / "script_output.log").read_text() == "hi\n"
    assert (workspace / "metadata.json").exists()


def test_teardown_missing_workspace(tmp_path):
    manager = WorkspaceManager(str(tmp_path))

    manager.teardown(tmp_path / "never-created")

    assert not os.path.exists(tmp_path / "never-created")
