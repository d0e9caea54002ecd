"""Pattern-based classification of captured script output."""

import re
from typing import Optional

from testbed.models.run import Verdict

EXIT_CODE_PATTERN = re.compile(r"===\s+Exit\s+code:\s+(-?\d+)\s+===", re.IGNORECASE)

# Any of these tokens anywhere on a line marks it as an error line
ERROR_PATTERN = re.compile(r"error|exception|failed|fatal|warning|denied", re.IGNORECASE)


def classify(output: Optional[str]) -> Verdict:
    """
    Derive a verdict from captured output.

    Success requires the exit-code marker to report 0 and no line to match
    an error token. Output that merely mentions "warning" is therefore a
    failure; remediation flows rely on that bias toward false negatives.

    Args:
        output: Captured text (entrypoint log or stream)

    Returns:
        Verdict; exit_code is None when no marker is present
    """
    if not output:
        return Verdict()

    match = EXIT_CODE_PATTERN.search(output)
    exit_code = int(match.group(1)) if match else None

    # TTY-attached output ends lines with \r\n
    lines = [line.rstrip("\r") for line in output.split("\n")]
    error_lines = [line for line in lines if ERROR_PATTERN.search(line)]

    return Verdict(
        success=exit_code == 0 and not error_lines,
        exit_code=exit_code,
        error_count=len(error_lines),
        error_lines=error_lines,
    )
