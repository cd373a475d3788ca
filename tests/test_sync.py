import threading
import time

import pytest

from reqhive import codec, storage
from reqhive.errors import CollectionBusyError, FlushError, InvalidFieldError, StorageError
from reqhive.store import Collection, CollectionStore, SyncState
from reqhive.sync import SyncEngine
from reqhive.tree import Request, RequestMethod


def _reload(store):
    return CollectionStore(storage.load_collection(store.collection.path))


def _failing_writes(monkeypatch, *failing_ids):
    real_write = storage.write_node
    calls = []

    def write_node(root, node_id, data):
        calls.append(node_id)
        if node_id in failing_ids:
            raise OSError("disk full")
        real_write(root, node_id, data)

    monkeypatch.setattr(storage, "write_node", write_node)
    return calls


def test_edits_survive_a_reload(engine, disk_store):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    disk_store.update_request(login, "method", "POST")
    disk_store.add_header(login, "X-Trace", "1")
    disk_store.add_header(login, "X-Debug", "1", enabled=False)

    report = engine.flush(disk_store)

    assert report.ok
    assert disk_store.state is SyncState.CLEAN
    reloaded = _reload(disk_store)
    request = reloaded.find(login)
    assert reloaded.path_of(login) == ["Auth", "Login"]
    assert request.method is RequestMethod.POST
    assert [h.name for h in request.headers if h.enabled] == ["X-Trace"]
    assert len(request.headers) == 2


def test_second_flush_is_a_no_op(engine, disk_store, monkeypatch):
    disk_store.create_node(disk_store.root_id, "request", "Health")
    engine.flush(disk_store)

    calls = _failing_writes(monkeypatch)
    report = engine.flush(disk_store)

    assert report.skipped
    assert report.writes == 0
    assert calls == []


def test_deleted_subtree_is_gone_after_reload(engine, disk_store):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    health = disk_store.create_node(disk_store.root_id, "request", "Health")
    engine.flush(disk_store)

    disk_store.delete_node(auth)
    report = engine.flush(disk_store)

    assert sorted(report.deleted) == sorted([auth, login])
    assert not storage.node_path(disk_store.collection.path, login).exists()
    reloaded = _reload(disk_store)
    assert reloaded.find(auth) is None
    assert reloaded.find(login) is None
    assert [c.id for c in reloaded.collection.root.children] == [health]
    assert not reloaded.any_dirty()


def test_moves_and_renames_survive_a_reload(engine, disk_store):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    users = disk_store.create_node(disk_store.root_id, "directory", "Users")
    login = disk_store.create_node(auth, "request", "Login")
    engine.flush(disk_store)

    disk_store.move_node(login, users)
    disk_store.rename_node(login, "Sign in")
    disk_store.rename_node(disk_store.root_id, "Renamed")
    engine.flush(disk_store)

    reloaded = _reload(disk_store)
    assert reloaded.path_of(login) == ["Users", "Sign in"]
    assert reloaded.find(auth).children == []
    assert reloaded.name == "Renamed"


def test_leaving_a_dirty_request_forces_a_flush(engine, disk_store):
    login = disk_store.create_node(disk_store.root_id, "request", "Login")
    health = disk_store.create_node(disk_store.root_id, "request", "Health")
    engine.flush(disk_store)
    disk_store.select(login)
    disk_store.update_request(login, "url", "https://api.example.com/login")

    report = engine.navigate(disk_store, health)

    assert report is not None and report.ok
    assert login in report.written
    assert disk_store.selected_id == health
    assert not disk_store.any_dirty()
    assert _reload(disk_store).find(login).url == "https://api.example.com/login"


def test_navigation_without_dirty_request_does_not_flush(engine, disk_store, monkeypatch):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    engine.flush(disk_store)
    calls = _failing_writes(monkeypatch)

    disk_store.select(login)
    assert engine.navigate(disk_store, auth) is None

    disk_store.rename_node(auth, "Auth2")
    assert engine.navigate(disk_store, login) is None

    assert calls == []
    assert disk_store.is_dirty(auth)
    assert disk_store.selected_id == login


def test_failed_child_holds_back_its_ancestors(engine, disk_store, monkeypatch):
    engine.flush(disk_store)
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    calls = _failing_writes(monkeypatch, login)

    report = engine.flush(disk_store)

    assert report.failed.keys() == {login}
    assert set(report.deferred) == {auth, disk_store.root_id}
    assert not report.manifest_written
    assert not report.ok
    assert disk_store.collection.dirty_set == {login, auth, disk_store.root_id}
    assert calls == [login]

    calls.clear()
    monkeypatch.undo()
    report = engine.flush(disk_store)

    assert report.ok
    assert report.written == [login, auth, disk_store.root_id]
    assert _reload(disk_store).path_of(login) == ["Auth", "Login"]


def test_successful_sibling_is_not_written_again(engine, disk_store, monkeypatch):
    engine.flush(disk_store)
    broken = disk_store.create_node(disk_store.root_id, "request", "Broken")
    fine = disk_store.create_node(disk_store.root_id, "request", "Fine")
    _failing_writes(monkeypatch, broken)

    report = engine.flush(disk_store)

    assert fine in report.written
    assert not disk_store.is_dirty(fine)
    assert disk_store.is_dirty(broken)
    assert fine in disk_store.collection.persisted


def test_removal_waits_for_its_anchor(engine, disk_store, monkeypatch):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    engine.flush(disk_store)

    disk_store.delete_node(login)
    _failing_writes(monkeypatch, auth)
    report = engine.flush(disk_store)

    assert report.deleted == []
    assert storage.node_path(disk_store.collection.path, login).exists()
    assert disk_store.collection.pending_deletes == {login: auth}
    assert disk_store.is_dirty(auth)

    monkeypatch.undo()
    report = engine.flush(disk_store)
    assert report.deleted == [login]
    assert not storage.node_path(disk_store.collection.path, login).exists()


def test_orphan_records_are_cleaned_up(engine, disk_store):
    # a delete whose parent rewrite landed but whose removal did not
    stray = Request(name="Stray")
    storage.write_node(disk_store.collection.path, stray.id, codec.encode_record(stray))

    reloaded = _reload(disk_store)
    assert reloaded.collection.pending_deletes == {stray.id: None}
    report = engine.flush(reloaded)

    assert report.deleted == [stray.id]
    assert report.written == []
    assert not storage.node_path(disk_store.collection.path, stray.id).exists()
    assert not reloaded.any_dirty()


def test_edits_during_a_flush_are_kept_for_the_next_one(engine, disk_store, monkeypatch):
    login = disk_store.create_node(disk_store.root_id, "request", "Login")
    real_write = storage.write_node
    observed = []

    def write_node(root, node_id, data):
        if node_id == login and not observed:
            observed.append(disk_store.state)
            disk_store.update_request(login, "url", "https://late.example.com")
        real_write(root, node_id, data)

    monkeypatch.setattr(storage, "write_node", write_node)
    engine.flush(disk_store)

    assert observed == [SyncState.FLUSHING]
    assert disk_store.state is SyncState.DIRTY
    assert disk_store.is_dirty(login)

    report = engine.flush(disk_store)
    assert report.written == [login]
    assert _reload(disk_store).find(login).url == "https://late.example.com"


def test_delete_during_a_flush_removes_the_fresh_record(engine, disk_store, monkeypatch):
    draft = disk_store.create_node(disk_store.root_id, "request", "Draft")
    real_write = storage.write_node

    def write_node(root, node_id, data):
        real_write(root, node_id, data)
        if node_id == draft:
            disk_store.delete_node(draft)

    monkeypatch.setattr(storage, "write_node", write_node)
    engine.flush(disk_store)
    monkeypatch.undo()

    assert disk_store.collection.pending_deletes == {draft: disk_store.root_id}
    engine.flush(disk_store)
    assert not storage.node_path(disk_store.collection.path, draft).exists()
    assert _reload(disk_store).find(draft) is None


def test_collections_flush_independently(engine, collections_dir, monkeypatch):
    slow = CollectionStore(storage.create_collection("Slow", collections_dir=collections_dir))
    fast = CollectionStore(storage.create_collection("Fast", collections_dir=collections_dir))
    slow_request = slow.create_node(slow.root_id, "request", "Slow request")
    fast.create_node(fast.root_id, "request", "Fast request")

    started = threading.Event()
    release = threading.Event()
    real_write = storage.write_node

    def write_node(root, node_id, data):
        if node_id == slow_request:
            started.set()
            release.wait(5)
        real_write(root, node_id, data)

    monkeypatch.setattr(storage, "write_node", write_node)
    pending = engine.flush_async(slow)
    assert started.wait(5)
    try:
        assert engine.flush(fast).ok
        slow.update_request(slow_request, "url", "https://example.com")
        assert slow.state is SyncState.FLUSHING
    finally:
        release.set()

    assert pending.result(5).ok
    assert slow.is_dirty(slow_request)


def test_concurrent_flush_of_one_collection_is_refused(disk_store):
    impatient = SyncEngine(lock_timeout=0.05)
    disk_store.create_node(disk_store.root_id, "request", "Health")
    disk_store.collection.flush_lock.acquire()
    try:
        with pytest.raises(CollectionBusyError):
            impatient.flush(disk_store)
    finally:
        disk_store.collection.flush_lock.release()
        impatient.shutdown()


def test_unbound_collection_cannot_flush(engine):
    store = CollectionStore(Collection.new("Nowhere"))
    with pytest.raises(StorageError):
        engine.flush(store)
    engine.discard(store)


def test_dry_run_writes_nothing(disk_store, monkeypatch):
    engine = SyncEngine(dry_run=True)
    calls = _failing_writes(monkeypatch)
    login = disk_store.create_node(disk_store.root_id, "request", "Login")

    report = engine.flush(disk_store)
    engine.shutdown()

    assert report.dry_run
    assert login in report.written
    assert calls == []
    assert not disk_store.any_dirty()
    assert _reload(disk_store).find(login) is None


def test_autosave_tick(engine, disk_store):
    engine.register(disk_store)
    assert engine.tick() == []

    login = disk_store.create_node(disk_store.root_id, "request", "Login")
    assert engine.tick() == []

    futures = engine.tick(now=time.monotonic() + 10)
    assert len(futures) == 1
    assert futures[0].result(5).ok
    assert not disk_store.any_dirty()
    assert _reload(disk_store).find(login) is not None


def test_autosave_disabled():
    engine = SyncEngine(autosave_interval=0)
    try:
        assert engine.tick(now=time.monotonic() + 1000) == []
    finally:
        engine.shutdown()


def test_close_flushes_and_forgets(engine, disk_store):
    engine.register(disk_store)
    login = disk_store.create_node(disk_store.root_id, "request", "Login")

    report = engine.close(disk_store)

    assert report.ok
    assert disk_store not in engine.stores
    assert _reload(disk_store).find(login) is not None


def test_discard_then_edit_then_flush(engine, disk_store):
    engine.flush(disk_store)
    draft = disk_store.create_node(disk_store.root_id, "directory", "A")

    engine.discard(disk_store)

    assert disk_store.find(draft) is None
    assert disk_store.state is SyncState.CLEAN

    request = disk_store.create_node(disk_store.root_id, "request", "X")
    report = engine.flush(disk_store)

    assert report.ok
    assert report.deferred == []
    assert disk_store.state is SyncState.CLEAN
    reloaded = _reload(disk_store)
    assert [c.id for c in reloaded.collection.root.children] == [request]


def test_discard_restores_the_saved_tree(engine, disk_store):
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    health = disk_store.create_node(disk_store.root_id, "request", "Health")
    disk_store.update_request(login, "url", "https://api.example.com/login")
    engine.flush(disk_store)

    disk_store.update_request(login, "url", "https://changed.example.com")
    disk_store.rename_node(auth, "Renamed")
    disk_store.delete_node(health)
    disk_store.select(login)
    engine.discard(disk_store)

    assert not disk_store.any_dirty()
    assert disk_store.collection.pending_deletes == {}
    assert disk_store.find(login).url == "https://api.example.com/login"
    assert disk_store.path_of(login) == ["Auth", "Login"]
    assert disk_store.find(health) is not None
    assert disk_store.selected_id == login
    assert engine.flush(disk_store).skipped


def test_discard_of_unbound_collection_only_clears_state(engine):
    store = CollectionStore(Collection.new("Nowhere"))
    login = store.create_node(store.root_id, "request", "Login")

    engine.discard(store)

    assert not store.any_dirty()
    assert store.find(login) is not None


def test_unsaved_children_are_written_with_their_directory(engine, disk_store):
    engine.flush(disk_store)
    auth = disk_store.create_node(disk_store.root_id, "directory", "Auth")
    login = disk_store.create_node(auth, "request", "Login")
    disk_store.collection.dirty_set.clear()
    disk_store.set_description("changed")

    report = engine.flush(disk_store)

    assert report.ok
    assert report.written == [login, auth, disk_store.root_id]
    assert _reload(disk_store).path_of(login) == ["Auth", "Login"]


def test_rejected_header_input_leaves_flush_working(engine, disk_store):
    login = disk_store.create_node(disk_store.root_id, "request", "Login")
    with pytest.raises(InvalidFieldError):
        disk_store.update_request(login, "headers", [(1, 2)])

    assert engine.flush(disk_store).ok
    assert engine.close(disk_store).skipped


def test_close_with_unsaved_changes_raises(engine, disk_store, monkeypatch):
    engine.register(disk_store)
    login = disk_store.create_node(disk_store.root_id, "request", "Login")
    _failing_writes(monkeypatch, login)

    with pytest.raises(FlushError) as excinfo:
        engine.close(disk_store)

    assert login in excinfo.value.report.failed
    assert disk_store in engine.stores

    assert engine.close(disk_store, discard=True) is None
    assert disk_store not in engine.stores
    assert not disk_store.any_dirty()


def test_shutdown_flushes_every_collection(collections_dir):
    engine = SyncEngine()
    stores = [
        engine.register(CollectionStore(storage.create_collection(name, collections_dir=collections_dir)))
        for name in ("One", "Two")
    ]
    for store in stores:
        store.create_node(store.root_id, "request", "Ping")

    reports = engine.shutdown()

    assert set(reports) == {"One", "Two"}
    assert all(r.ok for r in reports.values())
    assert not any(store.any_dirty() for store in stores)
