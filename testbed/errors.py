"""Error taxonomy for test runs."""


class TestbedError(Exception):
    """Base class for all testbed errors."""

    __test__ = False  # not a pytest test class


class ValidationError(TestbedError):
    """Missing or invalid input; raised before any run record exists."""


class WorkspaceError(TestbedError):
    """Local filesystem failure while preparing or cleaning a run workspace."""


class EnvironmentDriverError(TestbedError):
    """Container runtime failure: daemon unreachable, image missing, process error."""

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class RunNotFoundError(TestbedError):
    """No record exists for the requested run id."""


class RunInProgressError(TestbedError):
    """The operation needs a terminal run but the run is still executing."""


class InvalidTransitionError(TestbedError):
    """A run status change that would regress or skip the lifecycle."""
