"""
Synchronization engine: decides when a collection's dirty state reaches disk.

A flush runs in three phases so user edits are never blocked behind file I/O:

1. under the collection lock, snapshot the dirty set and pending deletions and
   encode every record (the snapshot is what this flush will write);
2. without the collection lock, write records deepest-first, then the manifest,
   then remove deleted records;
3. under the lock again, put back everything that was not confirmed on disk.

Mutations arriving during phase 2 mark nodes dirty again and are picked up by
the next flush. Only one flush per collection runs at a time (flush_lock);
separate collections flush independently.

Write ordering keeps storage referentially sound after a crash: a directory is
written only once every child it lists has a record on disk, and a deleted
record is removed only after the surviving ancestor that listed it has been
rewritten. A crash mid-move can leave a record listed twice; the loader keeps
the first occurrence. Records at the same depth are written in id order, so a
crash while sibling names are being swapped can leave two records with one
name; the loader keeps both and renames the later one.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from reqhive import codec, storage, tree
from reqhive.errors import CollectionBusyError, FlushError, ReqhiveError, StorageError
from reqhive.store import Collection, CollectionStore

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_INTERVAL = 5.0
DEFAULT_LOCK_TIMEOUT = 2.0


@dataclass
class FlushReport:
    collection: str
    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    deferred: list[str] = field(default_factory=list)
    manifest_written: bool = False
    skipped: bool = False
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.deferred

    @property
    def writes(self) -> int:
        """Filesystem operations issued (record writes, manifest write, removals)."""
        return len(self.written) + len(self.deleted) + int(self.manifest_written)


@dataclass
class _Write:
    node_id: str
    payload: bytes
    children: list[str] | None = None


@dataclass
class _Batch:
    writes: list[_Write]
    manifest: bytes | None
    deletes: dict[str, str | None]
    known: set[str]
    root_id: str


@dataclass
class _Registration:
    store: CollectionStore
    last_sync: float
    pending: Future | None = None


class SyncEngine:
    def __init__(
        self,
        *,
        dry_run: bool = False,
        autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        max_workers: int = 4,
    ):
        self.dry_run = dry_run
        self.autosave_interval = autosave_interval
        self.lock_timeout = lock_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reqhive-sync")
        self._registry: dict[CollectionStore, _Registration] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> SyncEngine:
        return cls(
            dry_run=settings.dry_run,
            autosave_interval=settings.autosave_seconds,
            lock_timeout=settings.lock_timeout,
        )

    # ── Registry ──────────────────────────────────────────────────────────────

    def register(self, store: CollectionStore) -> CollectionStore:
        self._registration(store)
        return store

    def _registration(self, store: CollectionStore) -> _Registration:
        with self._registry_lock:
            registration = self._registry.get(store)
            if registration is None:
                registration = _Registration(store, last_sync=time.monotonic())
                self._registry[store] = registration
            return registration

    def _registrations(self) -> list[_Registration]:
        with self._registry_lock:
            return list(self._registry.values())

    def _touch(self, store: CollectionStore) -> None:
        self._registration(store).last_sync = time.monotonic()

    @property
    def stores(self) -> list[CollectionStore]:
        return [r.store for r in self._registrations()]

    # ── Flushing ──────────────────────────────────────────────────────────────

    def flush(self, store: CollectionStore) -> FlushReport:
        collection = store.collection
        if not collection.flush_lock.acquire(timeout=self.lock_timeout):
            raise CollectionBusyError(f"a flush of {collection.name!r} is still running")
        try:
            return self._flush(store)
        finally:
            collection.flush_lock.release()

    save = flush

    def _flush(self, store: CollectionStore) -> FlushReport:
        collection = store.collection
        with store.locked():
            if not collection.any_dirty:
                logger.debug("nothing to flush for %r", collection.name)
                return FlushReport(collection.name, skipped=True)
            if self.dry_run:
                return self._dry_flush(store)
            if collection.path is None:
                raise StorageError(f"collection {collection.name!r} is not bound to a location")
            batch = self._snapshot(collection)
            collection.dirty_set.clear()
            collection.pending_deletes.clear()
            collection.in_flight = {w.node_id for w in batch.writes}
            collection.flushing = True

        report = FlushReport(collection.name)
        try:
            self._write(collection.path, batch, report)
        finally:
            self._reconcile(collection, batch, report)
        self._touch(store)

        if report.ok:
            logger.debug(
                "flushed %r: %d written, %d deleted",
                collection.name, len(report.written), len(report.deleted),
            )
        else:
            logger.error(
                "flush of %r incomplete: %d failed, %d deferred",
                collection.name, len(report.failed), len(report.deferred),
            )
        return report

    def _dry_flush(self, store: CollectionStore) -> FlushReport:
        collection = store.collection
        report = FlushReport(
            collection.name,
            written=sorted(collection.dirty_set),
            deleted=sorted(collection.pending_deletes),
            dry_run=True,
        )
        collection.persisted.update(collection.dirty_set)
        collection.persisted.difference_update(collection.pending_deletes)
        collection.dirty_set.clear()
        collection.pending_deletes.clear()
        self._touch(store)
        logger.debug("dry run: skipped writing %d record(s) of %r", len(report.written), collection.name)
        return report

    @staticmethod
    def _snapshot(collection: Collection) -> _Batch:
        # a directory can only be written once its children are, so unsaved
        # children ride along even when they are no longer marked dirty
        pending = [i for i in collection.dirty_set if i in collection.tree]
        ids = set(pending)
        while pending:
            node = collection.tree.get(pending.pop())
            if isinstance(node, tree.Directory):
                for child in node.children:
                    if child.id not in collection.persisted and child.id not in ids:
                        ids.add(child.id)
                        pending.append(child.id)
        nodes = [collection.tree.get(i) for i in ids]
        nodes.sort(key=lambda n: (-collection.tree.depth(n.id), n.id))
        writes = [
            _Write(
                node.id,
                codec.encode_record(node),
                [c.id for c in node.children] if isinstance(node, tree.Directory) else None,
            )
            for node in nodes
        ]
        manifest = storage.manifest_for(collection) if collection.root.id in collection.dirty_set else None
        return _Batch(
            writes=writes,
            manifest=manifest,
            deletes=dict(collection.pending_deletes),
            known=set(collection.persisted),
            root_id=collection.root.id,
        )

    def _write(self, root_dir, batch: _Batch, report: FlushReport) -> None:
        done = set()
        for write in batch.writes:
            if write.children is not None:
                missing = [c for c in write.children if c not in batch.known and c not in done]
                if missing:
                    logger.warning("holding back %s: %d child record(s) not on disk yet", write.node_id, len(missing))
                    report.deferred.append(write.node_id)
                    continue
            try:
                storage.write_node(root_dir, write.node_id, write.payload)
            except OSError as e:
                logger.error("failed to write record %s: %s", write.node_id, e)
                report.failed[write.node_id] = str(e)
                continue
            done.add(write.node_id)
            report.written.append(write.node_id)

        if batch.manifest is not None and batch.root_id in done:
            try:
                storage.write_manifest(root_dir, batch.manifest)
                report.manifest_written = True
            except OSError as e:
                logger.error("failed to write manifest in %s: %s", root_dir, e)
                report.failed[batch.root_id] = str(e)

        blocked = set(report.failed) | set(report.deferred)
        for node_id in sorted(batch.deletes):
            if not self._deletable(node_id, batch.deletes, blocked):
                continue
            try:
                storage.remove_node(root_dir, node_id)
            except OSError as e:
                logger.error("failed to remove record %s: %s", node_id, e)
                report.failed[node_id] = str(e)
                continue
            report.deleted.append(node_id)

    @staticmethod
    def _deletable(node_id: str, deletes: dict[str, str | None], blocked: set[str]) -> bool:
        """A record may go once the nearest surviving ancestor that listed it was rewritten."""
        seen = {node_id}
        anchor = deletes[node_id]
        while anchor is not None:
            if anchor in blocked:
                return False
            if anchor not in deletes:
                return True
            if anchor in seen:
                return False
            seen.add(anchor)
            anchor = deletes[anchor]
        return True

    @staticmethod
    def _reconcile(collection: Collection, batch: _Batch, report: FlushReport) -> None:
        with collection.lock:
            written = set(report.written)
            collection.persisted.update(written)
            collection.persisted.difference_update(report.deleted)
            unconfirmed = {w.node_id for w in batch.writes} - written
            unconfirmed.update(report.failed)
            collection.dirty_set.update(i for i in unconfirmed if i in collection.tree)
            for node_id, anchor in batch.deletes.items():
                if node_id not in report.deleted:
                    collection.pending_deletes.setdefault(node_id, anchor)
            collection.in_flight = set()
            collection.flushing = False

    def flush_async(self, store: CollectionStore) -> Future:
        registration = self._registration(store)
        future = self._executor.submit(self.flush, store)
        future.add_done_callback(self._report_background_failure)
        registration.pending = future
        return future

    @staticmethod
    def _report_background_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("background flush failed: %s", error)

    # ── Policies ──────────────────────────────────────────────────────────────

    def navigate(self, store: CollectionStore, to_id: str | None) -> FlushReport | None:
        """
        Move the selection to to_id. Leaving a dirty request forces a flush that
        completes before the selection changes.
        """
        current = store.selected_id
        report = None
        if current is not None and current != to_id and store.is_dirty(current):
            if isinstance(store.find(current), tree.Request):
                logger.debug("leaving dirty request %s, flushing %r", current, store.name)
                report = self.flush(store)
                if not report.ok:
                    logger.warning("forced flush of %r left unsaved changes", store.name)
        store.select(to_id)
        return report

    def discard(self, store: CollectionStore) -> None:
        """
        Drop unsaved changes. A collection bound to disk is reloaded so the
        tree matches what was last written; otherwise only the pending state
        is cleared and the tree keeps its edits.
        """
        if not store.collection.flush_lock.acquire(timeout=self.lock_timeout):
            raise CollectionBusyError(f"a flush of {store.name!r} is still running")
        try:
            self._discard(store)
        finally:
            store.collection.flush_lock.release()

    def _discard(self, store: CollectionStore) -> None:
        with store.locked() as collection:
            dropped = len(collection.dirty_set) + len(collection.pending_deletes)
            if not self.dry_run and collection.path is not None and storage.manifest_path(collection.path).is_file():
                saved = storage.load_collection(collection.path)
                collection.tree = saved.tree
                collection.description = saved.description
                collection.persisted = saved.persisted
                collection.pending_deletes = saved.pending_deletes
                collection.dirty_set = saved.dirty_set
            else:
                collection.pending_deletes.clear()
                collection.dirty_set.clear()
            if store.selected_id is not None and store.selected_id not in collection.tree:
                store.selected_id = None
        logger.info("discarded %d pending change(s) in %r", dropped, store.name)

    def tick(self, now: float | None = None) -> list[Future]:
        """Autosave: flush dirty collections that have not been synced for a while."""
        if self.autosave_interval <= 0:
            return []
        now = time.monotonic() if now is None else now
        futures = []
        for registration in self._registrations():
            if registration.pending is not None and not registration.pending.done():
                continue
            if not registration.store.any_dirty():
                continue
            if now - registration.last_sync < self.autosave_interval:
                continue
            futures.append(self.flush_async(registration.store))
        return futures

    def _wait_pending(self, store: CollectionStore) -> None:
        with self._registry_lock:
            registration = self._registry.get(store)
        if registration is not None and registration.pending is not None:
            wait([registration.pending])

    def close(self, store: CollectionStore, *, discard: bool = False) -> FlushReport | None:
        """
        Finish any in-flight flush, then persist (or drop) what is left and
        forget the store. A flush that cannot complete raises FlushError and
        leaves the store registered so the caller can retry or discard.
        """
        self._wait_pending(store)
        report = None
        if discard:
            self.discard(store)
        else:
            report = self.flush(store)
            if not report.ok:
                raise FlushError(f"unsaved changes remain in {store.name!r}", report)
        with self._registry_lock:
            self._registry.pop(store, None)
        logger.info("closed collection %r", store.name)
        return report

    def shutdown(self) -> dict[str, FlushReport]:
        """Flush every registered collection and stop the worker pool."""
        reports = {}
        for registration in self._registrations():
            self._wait_pending(registration.store)
            try:
                reports[registration.store.name] = self.flush(registration.store)
            except ReqhiveError as e:
                logger.error("could not flush %r on shutdown: %s", registration.store.name, e)
        self._executor.shutdown(wait=True)
        return reports
