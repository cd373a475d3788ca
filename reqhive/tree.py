"""
Collection tree model: directories own ordered children, requests are leaves.

Parents are referenced by id and resolved through the tree's index, so a node
never holds its parent alive and a detached node simply stops resolving.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from reqhive.errors import NodeNotFoundError


class RequestMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"

    def next(self) -> RequestMethod:
        members = list(RequestMethod)
        return members[(members.index(self) + 1) % len(members)]

    def prev(self) -> RequestMethod:
        members = list(RequestMethod)
        return members[(members.index(self) - 1) % len(members)]

    @property
    def carries_body(self) -> bool:
        return self not in _BODYLESS_METHODS


_BODYLESS_METHODS = frozenset({RequestMethod.GET, RequestMethod.HEAD, RequestMethod.OPTIONS})


class BodyKind(str, Enum):
    JSON = "JSON"
    NO_BODY = "NO_BODY"


@dataclass
class HeaderEntry:
    name: str
    value: str
    enabled: bool = True


@dataclass(frozen=True)
class ResponseSummary:
    status: int
    size: int
    elapsed_ms: float
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes = b""
    error: str | None = None


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(eq=False)
class Node:
    name: str
    id: str = field(default_factory=new_id)
    parent_id: str | None = None

    @property
    def is_dir(self) -> bool:
        return False


@dataclass(eq=False)
class Directory(Node):
    children: list[Node] = field(default_factory=list)

    @property
    def is_dir(self) -> bool:
        return True

    def child_named(self, name: str) -> Node | None:
        for child in self.children:
            if child.name == name:
                return child
        return None


@dataclass(eq=False)
class Request(Node):
    method: RequestMethod = RequestMethod.GET
    url: str = ""
    headers: list[HeaderEntry] = field(default_factory=list)
    body: str = ""
    body_kind: BodyKind = BodyKind.NO_BODY
    # transient, never persisted
    last_response: ResponseSummary | None = None

    @property
    def body_suppressed(self) -> bool:
        """True when a body is set on a method that conventionally sends none."""
        return bool(self.body) and not self.method.carries_body


class Tree:
    def __init__(self, root: Directory):
        root.parent_id = None
        self.root = root
        self._index: dict[str, Node] = {}
        self._register(root, None)

    def _register(self, node: Node, parent_id: str | None) -> None:
        node.parent_id = parent_id
        self._index[node.id] = node
        if isinstance(node, Directory):
            for child in node.children:
                self._register(child, node.id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    # ── Queries ───────────────────────────────────────────────────────────────

    def find(self, node_id: str) -> Node | None:
        return self._index.get(node_id)

    def get(self, node_id: str) -> Node:
        node = self._index.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def parent_of(self, node_id: str) -> Directory | None:
        node = self.get(node_id)
        if node.parent_id is None:
            return None
        return self._index[node.parent_id]

    def path_of(self, node_id: str) -> list[str]:
        """Names from just below the root down to the node; the root itself maps to []."""
        names = []
        node = self.get(node_id)
        while node.parent_id is not None:
            names.append(node.name)
            node = self._index[node.parent_id]
        names.reverse()
        return names

    def depth(self, node_id: str) -> int:
        return len(self.path_of(node_id))

    def iter_subtree(self, node_id: str | None = None) -> Iterator[Node]:
        start = self.root if node_id is None else self.get(node_id)
        stack = [start]
        while stack:
            node = stack.pop()
            yield node
            if isinstance(node, Directory):
                stack.extend(reversed(list(node.children)))

    def is_descendant(self, node_id: str, ancestor_id: str) -> bool:
        """True when node_id sits strictly below ancestor_id."""
        node = self.get(node_id)
        while node.parent_id is not None:
            if node.parent_id == ancestor_id:
                return True
            node = self._index[node.parent_id]
        return False

    # ── Structural primitives ─────────────────────────────────────────────────

    def attach(self, parent: Directory, node: Node, index: int | None = None) -> None:
        if index is None:
            parent.children.append(node)
        else:
            parent.children.insert(index, node)
        self._register(node, parent.id)

    def detach(self, node_id: str) -> Node:
        node = self.get(node_id)
        parent = self.parent_of(node_id)
        if parent is None:
            raise ValueError("the root cannot be detached")
        parent.children.remove(node)
        for descendant in list(self.iter_subtree(node_id)):
            del self._index[descendant.id]
        node.parent_id = None
        return node
