"""Exception hierarchy shared by the engine, the API and the CLI."""


class FinOpsError(Exception):
    """Base class for tracker errors."""


class ValidationError(FinOpsError):
    """Raised when input is rejected before any state is written."""


class NotFoundError(FinOpsError):
    """Raised when a task or subtask id does not exist."""


class ConflictError(FinOpsError):
    """Raised when a row changed underneath a compare-and-swap update."""


class DependencyUnavailable(FinOpsError):
    """Raised when the store cannot be reached."""


class NotificationError(FinOpsError):
    """Raised by a notifier when a message could not be delivered."""
