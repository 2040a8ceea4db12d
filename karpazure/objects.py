"""Cluster objects and an in-memory store of them."""

from __future__ import annotations

import copy
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

NODE_POOL_LABEL_KEY = "karpenter.sh/nodepool"
NODE_CLAIM_LINKED_ANNOTATION_KEY = "karpenter.azure.com/nodeclaim-linked"

_NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_NAME_SUFFIX_LENGTH = 5


class ObjectNotFoundError(LookupError):
    """The requested cluster object does not exist."""


@dataclass
class NodeClaim:
    """A request for a node, possibly already backed by a cloud instance."""

    name: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    provider_id: str = ""
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    taints: list[Any] = field(default_factory=list)
    startup_taints: list[Any] = field(default_factory=list)
    requirements: list[Any] = field(default_factory=list)
    kubelet: dict[str, Any] | None = None
    node_class_ref: str | None = None


@dataclass
class Node:
    """A cluster node."""

    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    provider_id: str = ""


@dataclass
class NodePool:
    """A pool whose template describes the node claims made for it."""

    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    taints: list[Any] = field(default_factory=list)
    startup_taints: list[Any] = field(default_factory=list)
    requirements: list[Any] = field(default_factory=list)
    kubelet: dict[str, Any] | None = None
    node_class_ref: str | None = None


class KubeStore:
    """A thread-safe in-memory store of node claims, nodes and node pools."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._node_claims: dict[str, NodeClaim] = {}
        self._nodes: dict[str, Node] = {}
        self._node_pools: dict[str, NodePool] = {}

    def _assign_name(self, node_claim: NodeClaim) -> None:
        if node_claim.name:
            return
        if not node_claim.generate_name:
            raise ValueError("node claim needs a name or a generate_name")
        while True:
            suffix = "".join(random.choices(_NAME_SUFFIX_ALPHABET, k=_NAME_SUFFIX_LENGTH))
            candidate = node_claim.generate_name + suffix
            if candidate not in self._node_claims:
                node_claim.name = candidate
                return

    def add(self, *args: NodeClaim | Node | NodePool) -> None:
        """Create or replace each given object."""
        with self._lock:
            for obj in args:
                if isinstance(obj, NodeClaim):
                    self._assign_name(obj)
                    if obj.creation_timestamp is None:
                        obj.creation_timestamp = datetime.now(timezone.utc)
                    self._node_claims[obj.name] = copy.deepcopy(obj)
                elif isinstance(obj, Node):
                    if not obj.name:
                        raise ValueError("node needs a name")
                    self._nodes[obj.name] = copy.deepcopy(obj)
                elif isinstance(obj, NodePool):
                    if not obj.name:
                        raise ValueError("node pool needs a name")
                    self._node_pools[obj.name] = copy.deepcopy(obj)
                else:
                    raise TypeError(f"unsupported object type {type(obj).__name__}")

    def list_node_claims(self) -> list[NodeClaim]:
        with self._lock:
            return [copy.deepcopy(claim) for claim in self._node_claims.values()]

    def list_nodes(self, label: str | None = None) -> list[Node]:
        """Return all nodes, or only those that carry the given label key."""
        with self._lock:
            return [
                copy.deepcopy(node)
                for node in self._nodes.values()
                if label is None or label in node.labels
            ]

    def get_node_pool(self, name: str) -> NodePool:
        with self._lock:
            pool = self._node_pools.get(name)
            if pool is None:
                raise ObjectNotFoundError(f"nodepool {name!r} not found")
            return copy.deepcopy(pool)

    def create_node_claim(self, node_claim: NodeClaim) -> NodeClaim:
        """Store a new node claim, generating its name if needed; names must be unique."""
        with self._lock:
            self._assign_name(node_claim)
            if node_claim.name in self._node_claims:
                raise ValueError(f"nodeclaim {node_claim.name!r} already exists")
            if node_claim.creation_timestamp is None:
                node_claim.creation_timestamp = datetime.now(timezone.utc)
            self._node_claims[node_claim.name] = copy.deepcopy(node_claim)
            return copy.deepcopy(node_claim)

    def patch_node_claim(self, node_claim: NodeClaim) -> None:
        """Replace a stored node claim; raise ObjectNotFoundError if it is absent."""
        with self._lock:
            if node_claim.name not in self._node_claims:
                raise ObjectNotFoundError(f"nodeclaim {node_claim.name!r} not found")
            self._node_claims[node_claim.name] = copy.deepcopy(node_claim)

    def delete_node(self, node: Node) -> None:
        """Remove a node; raise ObjectNotFoundError if it is absent."""
        with self._lock:
            if self._nodes.pop(node.name, None) is None:
                raise ObjectNotFoundError(f"node {node.name!r} not found")