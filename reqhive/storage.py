"""
On-disk layout of collections.

    <collections dir>/
        <sanitized collection name>/
            collection.json        manifest: name, description, root id
            nodes/<node id>.json   one record per directory or request

Records are keyed by id, so renames never move files. Every write goes through
write_atomic (temp file + os.replace) so a record is either the old or the new
version, never a torn one.
"""
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from reqhive import codec, models, tree
from reqhive.errors import CollectionLoadError, DecodeError, StorageError
from reqhive.store import Collection

logger = logging.getLogger(__name__)

MANIFEST_FILE = "collection.json"
NODES_DIR = "nodes"
RECORD_SUFFIX = ".json"

_FORBIDDEN_CHARS = frozenset('/\\?%*:|"<>.')


# ── Paths ─────────────────────────────────────────────────────────────────────

def get_collections_dir(collections_dir: Path) -> Path:
    collections_dir = Path(collections_dir)
    collections_dir.mkdir(parents=True, exist_ok=True)
    return collections_dir


def sanitize_filename(name: str) -> str:
    return "".join("_" if c in _FORBIDDEN_CHARS else c for c in name)


def manifest_path(root: Path) -> Path:
    return Path(root) / MANIFEST_FILE


def node_path(root: Path, node_id: str) -> Path:
    return Path(root) / NODES_DIR / f"{node_id}{RECORD_SUFFIX}"


# ── Record files ──────────────────────────────────────────────────────────────

def write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    descriptor, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(descriptor, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


def write_node(root: Path, node_id: str, data: bytes) -> None:
    write_atomic(node_path(root, node_id), data)


def write_manifest(root: Path, data: bytes) -> None:
    write_atomic(manifest_path(root), data)


def remove_node(root: Path, node_id: str) -> None:
    node_path(root, node_id).unlink(missing_ok=True)


def manifest_for(collection: Collection) -> bytes:
    return codec.encode_manifest(models.CollectionManifest(
        name=collection.name,
        description=collection.description,
        root=collection.root.id,
    ))


def _write_all(collection: Collection) -> None:
    """Write every record children-first, then the manifest, and mark the collection clean."""
    nodes = list(collection.tree.iter_subtree())
    for node in reversed(nodes):
        write_node(collection.path, node.id, codec.encode_record(node))
    write_manifest(collection.path, manifest_for(collection))
    collection.dirty_set.clear()
    collection.persisted.update(node.id for node in nodes)


# ── Loading ───────────────────────────────────────────────────────────────────

def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise CollectionLoadError(f"missing file {path}") from None
    except OSError as e:
        raise CollectionLoadError(f"cannot read {path}: {e}") from e


def _load_record(root: Path, node_id: str):
    path = node_path(root, node_id)
    try:
        record = codec.decode_record(_read(path), source=str(path))
    except DecodeError as e:
        raise CollectionLoadError(str(e)) from e
    if record.id != node_id:
        raise CollectionLoadError(f"{path} holds record {record.id!r}, expected {node_id!r}")
    return record


def _free_name(directory: tree.Directory, name: str) -> str:
    n = 2
    while directory.child_named(f"{name} ({n})") is not None:
        n += 1
    return f"{name} ({n})"


def load_collection(path: Path) -> Collection:
    """
    Rebuild a collection from disk. Ids come from the records, so they survive
    reloads. A record referenced twice (a move interrupted between its two
    directory rewrites) is kept at its first occurrence; a sibling whose name is
    already taken is loaded under a free name and marked dirty; records nothing
    references are queued for deletion on the next flush.
    """
    root_dir = Path(path)
    try:
        manifest = codec.decode_manifest(_read(manifest_path(root_dir)), source=str(manifest_path(root_dir)))
    except DecodeError as e:
        raise CollectionLoadError(str(e)) from e
    if manifest.format != models.FORMAT_VERSION:
        raise CollectionLoadError(f"{root_dir}: unsupported collection format {manifest.format}")

    root_record = _load_record(root_dir, manifest.root)
    if not isinstance(root_record, models.DirectoryRecord):
        raise CollectionLoadError(f"{root_dir}: root record {manifest.root!r} is not a directory")
    root = codec.node_from_record(root_record)
    root.name = manifest.name

    seen = {root.id}
    renamed = []
    pending = [(root, root_record)]
    while pending:
        directory, record = pending.pop(0)
        for child_id in record.children:
            if child_id in seen:
                logger.warning("record %s is referenced more than once in %s, keeping the first", child_id, root_dir)
                continue
            child_record = _load_record(root_dir, child_id)
            seen.add(child_id)
            child = codec.node_from_record(child_record)
            if directory.child_named(child.name) is not None:
                clash = child.name
                child.name = _free_name(directory, clash)
                renamed.append(child.id)
                logger.warning("%r already has an entry named %r in %s, loading %s as %r",
                               directory.name, clash, root_dir, child_id, child.name)
            directory.children.append(child)
            if isinstance(child, tree.Directory):
                pending.append((child, child_record))

    on_disk = {p.name[: -len(RECORD_SUFFIX)] for p in (root_dir / NODES_DIR).glob(f"*{RECORD_SUFFIX}")}
    orphans = on_disk - seen
    if orphans:
        logger.warning("%d unreferenced record(s) in %s will be removed on next flush", len(orphans), root_dir)

    collection = Collection(root, root_dir, description=manifest.description, persisted=seen, orphans=orphans)
    collection.dirty_set.update(renamed)
    logger.info("loaded collection %r with %d node(s)", collection.name, len(collection.tree))
    return collection


# ── Collections ───────────────────────────────────────────────────────────────

def create_collection(name: str, description: str = "", *, collections_dir: Path, dry_run: bool = False) -> Collection:
    if not name:
        name = f"Unnamed Collection {int(time.time() * 1000)}"
    path = Path(collections_dir) / sanitize_filename(name)
    if path.exists():
        raise StorageError(f"a collection already exists at {path}")
    collection = Collection.new(name, path, description)
    if dry_run:
        logger.info("dry run: created virtual collection %r", name)
        return collection
    try:
        (path / NODES_DIR).mkdir(parents=True)
        _write_all(collection)
    except OSError as e:
        raise StorageError(f"failed to write collection {name!r}: {e}") from e
    logger.info("created collection %r at %s", name, path)
    return collection


def rename_collection(path: Path, new_name: str, *, dry_run: bool = False) -> Path:
    """Rename a closed collection on disk; returns its new location."""
    if not new_name:
        raise StorageError("collection name cannot be empty")
    source = Path(path)
    target = source.parent / sanitize_filename(new_name)
    if target != source and target.exists():
        raise StorageError(f"a collection already exists at {target}")
    if dry_run:
        return target
    try:
        manifest = codec.decode_manifest(manifest_path(source).read_bytes(), source=str(manifest_path(source)))
        if target != source:
            os.rename(source, target)
        write_manifest(target, codec.encode_manifest(manifest.model_copy(update={"name": new_name})))
    except (OSError, DecodeError) as e:
        raise StorageError(f"failed to rename collection at {source}: {e}") from e
    logger.info("renamed collection %s to %r", source, new_name)
    return target


def delete_collection(path: Path, *, dry_run: bool = False) -> None:
    if dry_run:
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise StorageError(f"failed to delete collection at {path}: {e}") from e
    logger.info("deleted collection at %s", path)


# ── Collection listing ────────────────────────────────────────────────────────

class MetaSorting(str, Enum):
    RECENT = "recent"
    NAME = "name"
    SIZE = "size"

    def next(self) -> "MetaSorting":
        members = list(MetaSorting)
        return members[(members.index(self) + 1) % len(members)]

    def prev(self) -> "MetaSorting":
        members = list(MetaSorting)
        return members[(members.index(self) - 1) % len(members)]


def readable_byte_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    unit = 0
    while value >= 1024.0 and unit < len(units) - 1:
        value /= 1024.0
        unit += 1
    return f"{value:.2f}{units[unit]}"


@dataclass
class CollectionMeta:
    name: str
    path: Path
    size: int
    modified: datetime

    @property
    def readable_size(self) -> str:
        return readable_byte_size(self.size)


def sort_collections(metas: list[CollectionMeta], sorting: MetaSorting) -> list[CollectionMeta]:
    if sorting is MetaSorting.NAME:
        return sorted(metas, key=lambda m: m.name)
    if sorting is MetaSorting.SIZE:
        return sorted(metas, key=lambda m: m.size, reverse=True)
    return sorted(metas, key=lambda m: m.modified, reverse=True)


def list_collections(collections_dir: Path, sorting: MetaSorting = MetaSorting.RECENT) -> list[CollectionMeta]:
    collections_dir = Path(collections_dir)
    if not collections_dir.is_dir():
        return []
    metas = []
    for entry in collections_dir.iterdir():
        if not entry.is_dir():
            continue
        try:
            manifest = codec.decode_manifest(manifest_path(entry).read_bytes(), source=str(manifest_path(entry)))
            stats = [p.stat() for p in entry.rglob("*") if p.is_file()]
        except (OSError, DecodeError) as e:
            logger.warning("skipping %s: %s", entry, e)
            continue
        size = sum(s.st_size for s in stats)
        modified = max(s.st_mtime for s in stats)
        metas.append(CollectionMeta(
            name=manifest.name,
            path=entry,
            size=size,
            modified=datetime.fromtimestamp(modified, tz=timezone.utc),
        ))
    return sort_collections(metas, MetaSorting(sorting))


# ── Export / import ───────────────────────────────────────────────────────────

def export_collection(collection: Collection, target: Path) -> Path:
    """Write the whole collection as one export document."""
    with collection.lock:
        data = codec.encode_collection(collection.name, collection.description, collection.root)
    target = Path(target)
    write_atomic(target, data)
    return target


def import_collection(source: Path, collections_dir: Path, *, dry_run: bool = False) -> Collection:
    source = Path(source)
    try:
        data = source.read_bytes()
    except OSError as e:
        raise CollectionLoadError(f"cannot read {source}: {e}") from e
    try:
        info, root = codec.decode_collection(data, source=str(source))
    except DecodeError as e:
        raise CollectionLoadError(str(e)) from e
    path = Path(collections_dir) / sanitize_filename(info.name)
    if path.exists():
        raise StorageError(f"a collection already exists at {path}")
    collection = Collection.from_tree(root, path, info.description)
    if dry_run:
        return collection
    try:
        (path / NODES_DIR).mkdir(parents=True)
        _write_all(collection)
    except OSError as e:
        raise StorageError(f"failed to write collection {info.name!r}: {e}") from e
    logger.info("imported collection %r from %s", info.name, source)
    return collection
