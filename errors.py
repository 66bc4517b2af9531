# errors.py
"""Exception taxonomy shared by the store, runner, service and API layers."""


class QueueError(Exception):
    """Base class for every buildq error."""


class ValidationError(QueueError):
    """Bad caller input (missing fields, page < 1, ...)."""


class InvalidTransitionError(ValidationError):
    """A status change the job state machine does not allow."""


class NotFoundError(QueueError):
    """Requested job ID does not exist."""


class StoreError(QueueError):
    """The persistence engine failed."""


class ExecutionError(QueueError):
    """The external command runner could not be spawned or introspected."""
