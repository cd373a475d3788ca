"""
Collection store: the single mutation surface for a loaded collection.

Every structural or field change goes through CollectionStore so the dirty set
stays authoritative. A collection is guarded by one re-entrant lock; mutations
take it with a timeout and fail with CollectionBusyError instead of stalling
the caller behind a long flush.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from reqhive import tree
from reqhive.errors import (
    CollectionBusyError,
    CyclicMoveError,
    HeaderError,
    InvalidFieldError,
    InvalidParentError,
    NameCollisionError,
    RootDeletionError,
    StoreError,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 2.0

REQUEST_FIELDS = ("method", "url", "body", "body_kind", "headers")


class SyncState(Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    FLUSHING = "flushing"


class NodeKind(str, Enum):
    DIRECTORY = "directory"
    REQUEST = "request"


@dataclass(frozen=True)
class RequestSnapshot:
    id: str
    name: str
    method: tree.RequestMethod
    url: str
    headers: tuple[tuple[str, str, bool], ...]
    body: str
    body_kind: tree.BodyKind

    @property
    def enabled_headers(self) -> list[tuple[str, str]]:
        return [(name, value) for name, value, enabled in self.headers if enabled]


class Collection:
    """
    One open collection: its tree, the on-disk location it is bound to, and the
    bookkeeping the sync engine needs.

    pending_deletes maps a removed id to its anchor, the surviving parent whose
    rewrite stops referencing it (None for orphans found on load).
    persisted holds the ids known to have a record on disk; in_flight the ids
    being written by a flush that has released the lock.
    """

    def __init__(
        self,
        root: tree.Directory,
        path: Path | str | None = None,
        *,
        description: str = "",
        persisted: Iterable[str] = (),
        orphans: Iterable[str] = (),
    ):
        self.tree = tree.Tree(root)
        self.path = Path(path) if path is not None else None
        self.description = description
        self.dirty_set: set[str] = set()
        self.pending_deletes: dict[str, str | None] = {orphan: None for orphan in orphans}
        self.persisted: set[str] = set(persisted)
        self.in_flight: set[str] = set()
        self.lock = threading.RLock()
        self.flush_lock = threading.Lock()
        self.flushing = False

    @classmethod
    def new(cls, name: str, path: Path | str | None = None, description: str = "") -> Collection:
        """An empty collection that has never been written."""
        collection = cls(tree.Directory(name=name), path, description=description)
        collection.dirty_set.add(collection.root.id)
        return collection

    @classmethod
    def from_tree(cls, root: tree.Directory, path: Path | str | None = None, description: str = "") -> Collection:
        """Wrap a detached tree (e.g. an imported one); every node starts dirty."""
        collection = cls(root, path, description=description)
        collection.dirty_set.update(node.id for node in collection.tree.iter_subtree())
        return collection

    @property
    def root(self) -> tree.Directory:
        return self.tree.root

    @property
    def name(self) -> str:
        return self.tree.root.name

    @property
    def any_dirty(self) -> bool:
        return bool(self.dirty_set or self.pending_deletes)

    @property
    def state(self) -> SyncState:
        if self.flushing:
            return SyncState.FLUSHING
        return SyncState.DIRTY if self.any_dirty else SyncState.CLEAN

    def __repr__(self) -> str:
        return f"Collection(name={self.name!r}, path={self.path!r}, state={self.state.value})"


def _header_problem(name, value, enabled) -> str | None:
    if not isinstance(name, str) or not isinstance(value, str):
        return "header name and value must be strings"
    if not isinstance(enabled, bool):
        return "header enabled flag must be a bool"
    if not name:
        return "header name cannot be empty"
    return None


def _coerce_headers(value) -> list[tree.HeaderEntry]:
    if not isinstance(value, (list, tuple)):
        raise InvalidFieldError("headers must be a list")
    entries = []
    for item in value:
        if isinstance(item, tree.HeaderEntry):
            entry = tree.HeaderEntry(item.name, item.value, item.enabled)
        elif isinstance(item, (list, tuple)) and len(item) in (2, 3):
            entry = tree.HeaderEntry(*item)
        else:
            raise InvalidFieldError(f"invalid header entry {item!r}")
        problem = _header_problem(entry.name, entry.value, entry.enabled)
        if problem:
            raise InvalidFieldError(f"{problem}: {item!r}")
        entries.append(entry)
    return entries


def _coerce_field(field: str, value):
    if field == "method":
        try:
            return tree.RequestMethod(value.upper() if isinstance(value, str) else value)
        except ValueError:
            raise InvalidFieldError(f"unsupported method {value!r}") from None
    if field == "body_kind":
        try:
            return tree.BodyKind(value)
        except ValueError:
            raise InvalidFieldError(f"unsupported body kind {value!r}") from None
    if field == "headers":
        return _coerce_headers(value)
    if not isinstance(value, str):
        raise InvalidFieldError(f"{field} must be a string")
    return value


class CollectionStore:
    def __init__(self, collection: Collection, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.collection = collection
        self.lock_timeout = lock_timeout
        self.selected_id: str | None = None

    @contextmanager
    def locked(self) -> Iterator[Collection]:
        if not self.collection.lock.acquire(timeout=self.lock_timeout):
            raise CollectionBusyError(f"collection {self.collection.name!r} is busy, try again")
        try:
            yield self.collection
        finally:
            self.collection.lock.release()

    # ── Queries ───────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.collection.name

    @property
    def root_id(self) -> str:
        return self.collection.root.id

    @property
    def state(self) -> SyncState:
        return self.collection.state

    def find(self, node_id: str) -> tree.Node | None:
        return self.collection.tree.find(node_id)

    def path_of(self, node_id: str) -> list[str]:
        return self.collection.tree.path_of(node_id)

    def iter_subtree(self, node_id: str | None = None) -> Iterator[tree.Node]:
        return self.collection.tree.iter_subtree(node_id)

    def is_dirty(self, node_id: str) -> bool:
        return node_id in self.collection.dirty_set

    def any_dirty(self) -> bool:
        return self.collection.any_dirty

    # ── Validation helpers ────────────────────────────────────────────────────

    def _mark(self, *node_ids: str) -> None:
        self.collection.dirty_set.update(node_ids)

    def _directory(self, node_id: str) -> tree.Directory:
        node = self.collection.tree.get(node_id)
        if not isinstance(node, tree.Directory):
            raise InvalidParentError(f"{node.name!r} is not a directory")
        return node

    def _request(self, node_id: str) -> tree.Request:
        node = self.collection.tree.get(node_id)
        if not isinstance(node, tree.Request):
            raise InvalidFieldError(f"{node.name!r} is not a request")
        return node

    @staticmethod
    def _check_name(parent: tree.Directory | None, name: str, ignore: tree.Node | None = None) -> None:
        if not isinstance(name, str) or not name.strip():
            raise StoreError("name cannot be empty")
        if parent is None:
            return
        existing = parent.child_named(name)
        if existing is not None and existing is not ignore:
            raise NameCollisionError(name, parent.name)

    # ── Structural mutations ──────────────────────────────────────────────────

    def create_node(
        self,
        parent_id: str,
        kind: NodeKind | str,
        name: str,
        *,
        method: tree.RequestMethod | str = tree.RequestMethod.GET,
    ) -> str:
        try:
            kind = NodeKind(kind)
        except ValueError:
            raise InvalidFieldError(f"unknown node kind {kind!r}") from None
        with self.locked() as collection:
            parent = self._directory(parent_id)
            self._check_name(parent, name)
            if kind is NodeKind.DIRECTORY:
                node = tree.Directory(name=name)
            else:
                node = tree.Request(name=name, method=_coerce_field("method", method))
            collection.tree.attach(parent, node)
            self._mark(node.id, parent.id)
        logger.debug("created %s %r under %r", kind.value, name, parent.name)
        return node.id

    def rename_node(self, node_id: str, new_name: str) -> None:
        with self.locked() as collection:
            node = collection.tree.get(node_id)
            if node.name == new_name:
                return
            self._check_name(collection.tree.parent_of(node_id), new_name, ignore=node)
            old_name, node.name = node.name, new_name
            self._mark(node_id)
        logger.debug("renamed %r to %r", old_name, new_name)

    def move_node(self, node_id: str, new_parent_id: str, index: int | None = None) -> None:
        with self.locked() as collection:
            node = collection.tree.get(node_id)
            if node_id == self.root_id:
                raise InvalidParentError("the collection root cannot be moved")
            if new_parent_id == node_id or collection.tree.is_descendant(new_parent_id, node_id):
                raise CyclicMoveError(f"cannot move {node.name!r} into itself or one of its descendants")
            target = self._directory(new_parent_id)
            old_parent = collection.tree.parent_of(node_id)
            same_parent = target is old_parent
            if same_parent and index is None:
                return
            if not same_parent:
                self._check_name(target, node.name)
            limit = len(target.children) - (1 if same_parent else 0)
            if index is not None and not 0 <= index <= limit:
                raise InvalidFieldError(f"position {index} is out of range for {target.name!r}")
            collection.tree.detach(node_id)
            collection.tree.attach(target, node, index)
            self._mark(old_parent.id, target.id, *(n.id for n in collection.tree.iter_subtree(node_id)))
        logger.debug("moved %r from %r to %r", node.name, old_parent.name, target.name)

    def delete_node(self, node_id: str) -> None:
        with self.locked() as collection:
            if node_id == self.root_id:
                raise RootDeletionError("the collection root cannot be deleted")
            parent = collection.tree.parent_of(node_id)
            removed = [n.id for n in collection.tree.iter_subtree(node_id)]
            name = collection.tree.detach(node_id).name
            for removed_id in removed:
                collection.dirty_set.discard(removed_id)
                if removed_id in collection.persisted or removed_id in collection.in_flight:
                    collection.pending_deletes[removed_id] = parent.id
            if self.selected_id in removed:
                self.selected_id = None
            self._mark(parent.id)
        logger.debug("deleted %r and %d descendant(s)", name, len(removed) - 1)

    # ── Field mutations ───────────────────────────────────────────────────────

    def update_request(self, node_id: str, field: str, value) -> None:
        """
        Set one request field. A body on a method that carries none is accepted
        and only flagged (Request.body_suppressed); hiding it is the UI's call.
        """
        if field not in REQUEST_FIELDS:
            raise InvalidFieldError(f"unknown request field {field!r}")
        value = _coerce_field(field, value)
        with self.locked():
            request = self._request(node_id)
            if getattr(request, field) == value:
                return
            setattr(request, field, value)
            self._mark(node_id)
            if request.body_suppressed:
                logger.warning("%s request %r has a body that will not be sent", request.method.value, request.name)

    @staticmethod
    def _check_header(name, value, enabled) -> None:
        problem = _header_problem(name, value, enabled)
        if problem:
            raise HeaderError(problem)
        if not value:
            raise HeaderError("header value cannot be empty")

    def add_header(self, node_id: str, name: str, value: str, enabled: bool = True) -> int:
        self._check_header(name, value, enabled)
        with self.locked():
            request = self._request(node_id)
            request.headers.append(tree.HeaderEntry(name, value, enabled))
            self._mark(node_id)
            return len(request.headers) - 1

    @staticmethod
    def _header(request: tree.Request, index: int) -> tree.HeaderEntry:
        if not 0 <= index < len(request.headers):
            raise HeaderError(f"{request.name!r} has no header at position {index}")
        return request.headers[index]

    def update_header(
        self,
        node_id: str,
        index: int,
        *,
        name: str | None = None,
        value: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        with self.locked():
            request = self._request(node_id)
            entry = self._header(request, index)
            updated = tree.HeaderEntry(
                entry.name if name is None else name,
                entry.value if value is None else value,
                entry.enabled if enabled is None else enabled,
            )
            self._check_header(updated.name, updated.value, updated.enabled)
            if updated == entry:
                return
            request.headers[index] = updated
            self._mark(node_id)

    def toggle_header(self, node_id: str, index: int) -> bool:
        with self.locked():
            entry = self._header(self._request(node_id), index)
            entry.enabled = not entry.enabled
            self._mark(node_id)
            return entry.enabled

    def remove_header(self, node_id: str, index: int) -> tree.HeaderEntry:
        with self.locked():
            request = self._request(node_id)
            self._header(request, index)
            entry = request.headers.pop(index)
            self._mark(node_id)
            return entry

    def set_description(self, description: str) -> None:
        with self.locked() as collection:
            if collection.description == description:
                return
            collection.description = description
            self._mark(self.root_id)

    # ── Selection and executor seam ───────────────────────────────────────────

    def select(self, node_id: str | None) -> None:
        with self.locked() as collection:
            if node_id is not None:
                collection.tree.get(node_id)
            self.selected_id = node_id

    def snapshot_request(self, node_id: str) -> RequestSnapshot:
        with self.locked():
            request = self._request(node_id)
            return RequestSnapshot(
                id=request.id,
                name=request.name,
                method=request.method,
                url=request.url,
                headers=tuple((h.name, h.value, h.enabled) for h in request.headers),
                body=request.body,
                body_kind=request.body_kind,
            )

    def attach_response(self, node_id: str, summary: tree.ResponseSummary) -> None:
        """Responses are not part of the collection definition; nothing becomes dirty."""
        with self.locked():
            self._request(node_id).last_response = summary
