"""Error taxonomy for calendar synchronization."""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class NotFoundError(SyncError):
    """A mapping, entity or conflict record does not exist."""
    pass


class EventValidationError(SyncError):
    """A remote event payload or merge payload is malformed."""
    pass


class RemoteWriteFailure(SyncError):
    """A write to the remote calendar failed.

    The mapping checkpoint is never advanced when this is raised, so the next
    poll re-detects the same divergence.
    """

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.cause = cause


class StoreError(SyncError):
    """Persistence layer failure."""
    pass


class MappingStoreError(StoreError):
    """Mapping store failure. Systemic: aborts the whole batch."""
    pass


class EntityStoreError(StoreError):
    """Entity table failure. Aborts only the current item."""
    pass


class ConflictStateError(SyncError):
    """Conflict record is not in a state that allows the requested action."""
    pass


class OfflineError(SyncError):
    """The remote calendar is currently unreachable."""
    pass
