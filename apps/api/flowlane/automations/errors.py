from __future__ import annotations


class AutomationError(Exception):
    code = "AUTOMATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ActionError(AutomationError):
    """Failure of a single action; recorded in the automation log, never raised out of a run."""

    code = "ACTION_FAILED"


class NotFoundError(ActionError):
    code = "NOT_FOUND"


class ValidationMissingError(ActionError):
    code = "VALIDATION_MISSING"


class DispatchFailureError(ActionError):
    code = "DISPATCH_FAILURE"


class InvalidActionError(ActionError):
    code = "INVALID_ACTION"


class StorageFailureError(AutomationError):
    """The datastore is unreachable or rejected an operation. Fatal to the whole run."""

    code = "STORAGE_FAILURE"
