class TaskRunnerError(Exception):
    """Base class for every error raised by taskrunner."""


class InvalidArgument(TaskRunnerError, ValueError):
    """Malformed schedule options; raised before the store is touched."""


class DuplicateId(TaskRunnerError):
    def __init__(self, task_id: str):
        super().__init__(f"Task with id {task_id!r} already exists")
        self.task_id = task_id


class StoreUnavailable(TaskRunnerError):
    """The task store could not complete an operation."""


class ProcessorFailure(TaskRunnerError):
    """
    Raised around any exception coming out of a task processor.
    The original exception is kept as __cause__.
    """

    def __init__(self, task_name: str, message: str):
        super().__init__(message)
        self.task_name = task_name
        self.message = message
