from __future__ import annotations


class RecurrenceError(ValueError):
    pass


class InvalidPatternError(RecurrenceError):
    """Raised when a recurrence pattern is missing or not a known value."""

    def __init__(self, pattern: object = None):
        self.pattern = pattern
        if pattern is None or (isinstance(pattern, str) and not pattern.strip()):
            msg = "Recurrence pattern is required"
        else:
            msg = f"Invalid recurrence pattern: {pattern!r}. Must be daily, weekly, monthly, or yearly"
        super().__init__(msg)


class MissingDueDateForRecurringError(RecurrenceError):
    def __init__(self) -> None:
        super().__init__("Due date is required for recurring tasks")


class TaskNotFoundError(LookupError):
    """Raised when a task does not exist or belongs to another account."""

    def __init__(self, task_id: int):
        self.task_id = int(task_id)
        super().__init__(f"Task {self.task_id} not found")


class TaskCompletedError(ValueError):
    """Completed tasks are terminal and cannot be edited."""

    def __init__(self, task_id: int):
        self.task_id = int(task_id)
        super().__init__("Completed tasks cannot be modified")


class DeliveryError(RuntimeError):
    pass


class PersistenceError(RuntimeError):
    pass
