class ReqhiveError(Exception):
    """Root of every error raised by reqhive."""


# ── Store validation ──────────────────────────────────────────────────────────

class StoreError(ReqhiveError):
    """A mutation was rejected; the tree is unchanged."""


class NodeNotFoundError(StoreError):
    def __init__(self, node_id: str):
        super().__init__(f"no node with id {node_id!r}")
        self.node_id = node_id


class NameCollisionError(StoreError):
    def __init__(self, name: str, parent_name: str):
        super().__init__(f"{parent_name!r} already contains an entry named {name!r}")
        self.name = name


class InvalidParentError(StoreError):
    pass


class CyclicMoveError(StoreError):
    pass


class RootDeletionError(StoreError):
    pass


class InvalidFieldError(StoreError):
    pass


class HeaderError(StoreError):
    pass


# ── Persistence ───────────────────────────────────────────────────────────────

class DecodeError(ReqhiveError):
    def __init__(self, message: str, location: str | None = None, source: str | None = None):
        prefix = f"{source}: " if source else ""
        where = f" at {location}" if location else ""
        super().__init__(f"{prefix}{message}{where}")
        self.location = location
        self.source = source


class CollectionLoadError(ReqhiveError):
    pass


class StorageError(ReqhiveError):
    pass


# ── Synchronization ───────────────────────────────────────────────────────────

class CollectionBusyError(ReqhiveError):
    """The collection lock could not be taken in time. Safe to retry."""


class FlushError(ReqhiveError):
    def __init__(self, message: str, report):
        super().__init__(message)
        self.report = report
