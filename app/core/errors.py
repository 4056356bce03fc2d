class TaskServiceError(Exception):
    """Base class for errors raised by the task backend."""


class NotFoundError(TaskServiceError):
    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id {entity_id} not found")


class ValidationError(TaskServiceError):
    pass


class CacheUnavailableError(TaskServiceError):
    """Redis could not be reached. Callers degrade to the store."""


class QueueUnavailableError(TaskServiceError):
    """A job could not be persisted to the queue."""


class StoreUnavailableError(TaskServiceError):
    """The relational store could not be reached."""
