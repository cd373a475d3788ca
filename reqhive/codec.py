"""
Pure conversion between tree nodes and persisted JSON bytes.

Two document families live here:

* export documents, the single-file collection format (``{"info", "requests"}``
  with nested folders), produced by ``encode`` / ``encode_collection``;
* storage records, one shallow document per node carrying its explicit id and
  ordered child ids, produced by ``encode_record``, plus the collection manifest.

Output is deterministic: field order comes from the pydantic models, children and
headers keep their order, and nothing time-dependent is embedded.
"""
from __future__ import annotations

import json

from pydantic import BaseModel, TypeAdapter, ValidationError

from reqhive import models, tree
from reqhive.errors import DecodeError

_RECORD_ADAPTER = TypeAdapter(models.NodeRecord)
_UNION_TAGS = frozenset({"JsonRequest", "JsonFolder", "request", "directory"})


def _dump(model: BaseModel) -> bytes:
    payload = model.model_dump(mode="json", by_alias=True)
    return (json.dumps(payload, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _load_json(data: bytes, source: str | None):
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError("invalid utf-8", f"byte {e.start}", source) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(e.msg, f"line {e.lineno} column {e.colno}", source) from e


def _validate(validator, payload, source: str | None):
    try:
        if isinstance(validator, TypeAdapter):
            return validator.validate_python(payload)
        return validator.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        # union branches show up in the location as model names
        parts = [str(part) for part in first["loc"] if part not in _UNION_TAGS]
        location = ".".join(parts) or "<document>"
        raise DecodeError(first["msg"], location, source) from e


def _headers_out(headers: list[tree.HeaderEntry]) -> list[models.HeaderRecord]:
    return [models.HeaderRecord(key=h.name, val=h.value, enabled=h.enabled) for h in headers]


def _headers_in(records: list[models.HeaderRecord]) -> list[tree.HeaderEntry]:
    return [tree.HeaderEntry(r.key, r.val, r.enabled) for r in records]


# ── Export documents ──────────────────────────────────────────────────────────

def _to_json_item(node: tree.Node) -> models.JsonRequest | models.JsonFolder:
    if isinstance(node, tree.Directory):
        return models.JsonFolder(
            name=node.name,
            requests=[_to_json_item(child) for child in node.children],
        )
    return models.JsonRequest(
        name=node.name,
        method=node.method,
        uri=node.url,
        headers=_headers_out(node.headers),
        body_kind=node.body_kind,
        body=node.body,
    )


def _from_json_items(items, location: str, source: str | None) -> list[tree.Node]:
    nodes = []
    seen = set()
    for i, item in enumerate(items):
        item_location = f"{location}.{i}" if location else str(i)
        if item.name in seen:
            raise DecodeError(f"duplicate sibling name {item.name!r}", item_location, source)
        seen.add(item.name)
        nodes.append(_from_json_item(item, item_location, source))
    return nodes


def _from_json_item(item, location: str, source: str | None) -> tree.Node:
    if isinstance(item, models.JsonFolder):
        children = _from_json_items(item.requests, f"{location}.requests" if location else "requests", source)
        return tree.Directory(name=item.name, children=children)
    return tree.Request(
        name=item.name,
        method=item.method,
        url=item.uri,
        headers=_headers_in(item.headers),
        body=item.body,
        body_kind=item.body_kind,
    )


def encode(node: tree.Node) -> bytes:
    """Encode a request or a whole directory subtree as an export document."""
    return _dump(_to_json_item(node))


def decode(data: bytes, source: str | None = None) -> tree.Node:
    """
    Decode an export document into a fresh node with fresh ids.
    Accepts a single request, a folder, or a whole collection document
    (whose root directory is returned, named after the collection).
    """
    payload = _load_json(data, source)
    if isinstance(payload, dict) and "info" in payload:
        _, root = _collection_from_payload(payload, source)
        return root
    if isinstance(payload, dict) and "method" in payload:
        item = _validate(models.JsonRequest, payload, source)
    else:
        item = _validate(models.JsonFolder, payload, source)
    return _from_json_item(item, "", source)


def encode_collection(name: str, description: str, root: tree.Directory) -> bytes:
    document = models.JsonCollection(
        info=models.JsonCollectionInfo(name=name, description=description),
        requests=[_to_json_item(child) for child in root.children],
    )
    return _dump(document)


def _collection_from_payload(payload, source: str | None) -> tuple[models.JsonCollectionInfo, tree.Directory]:
    document = _validate(models.JsonCollection, payload, source)
    children = _from_json_items(document.requests, "requests", source)
    return document.info, tree.Directory(name=document.info.name, children=children)


def decode_collection(data: bytes, source: str | None = None) -> tuple[models.JsonCollectionInfo, tree.Directory]:
    return _collection_from_payload(_load_json(data, source), source)


# ── Storage records ───────────────────────────────────────────────────────────

def encode_record(node: tree.Node) -> bytes:
    """Shallow record: a directory lists its children by id, in order."""
    if isinstance(node, tree.Directory):
        record = models.DirectoryRecord(
            id=node.id,
            name=node.name,
            children=[child.id for child in node.children],
        )
    else:
        record = models.RequestRecord(
            id=node.id,
            name=node.name,
            method=node.method,
            uri=node.url,
            headers=_headers_out(node.headers),
            body_kind=node.body_kind,
            body=node.body,
        )
    return _dump(record)


def decode_record(data: bytes, source: str | None = None) -> models.RequestRecord | models.DirectoryRecord:
    return _validate(_RECORD_ADAPTER, _load_json(data, source), source)


def node_from_record(record: models.RequestRecord | models.DirectoryRecord) -> tree.Node:
    """Build a node from its record; directories come back without children."""
    if isinstance(record, models.DirectoryRecord):
        return tree.Directory(name=record.name, id=record.id)
    return tree.Request(
        name=record.name,
        id=record.id,
        method=record.method,
        url=record.uri,
        headers=_headers_in(record.headers),
        body=record.body,
        body_kind=record.body_kind,
    )


def encode_manifest(manifest: models.CollectionManifest) -> bytes:
    return _dump(manifest)


def decode_manifest(data: bytes, source: str | None = None) -> models.CollectionManifest:
    return _validate(models.CollectionManifest, _load_json(data, source), source)
