"""Links cloud instances that have no node claim to newly created node claims."""

from __future__ import annotations

import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Sequence, TypeVar

from cachetools import TTLCache

from .compute import (
    ResourceNotFoundError,
    VirtualMachine,
    VirtualMachinesAPI,
    VirtualMachineUpdate,
    make_vm_id,
)
from .inplaceupdate import _vm_name_from_provider_id
from .objects import (
    NODE_CLAIM_LINKED_ANNOTATION_KEY,
    NODE_POOL_LABEL_KEY,
    KubeStore,
    Node,
    NodeClaim,
    ObjectNotFoundError,
)

NODE_POOL_TAG_KEY = "karpenter.sh_nodepool"
PROVIDER_ID_PREFIX = "azure://"

_MAX_PARALLELISM = 100
_CACHE_SIZE = 1 << 20

_log = logging.getLogger(__name__)

T = TypeVar("T")


class _LinkedCache:
    """A thread-safe set of provider IDs whose entries expire after a TTL."""

    def __init__(self, ttl: float, timer: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._entries: TTLCache = TTLCache(maxsize=_CACHE_SIZE, ttl=ttl, timer=timer)

    def add(self, provider_id: str) -> None:
        with self._lock:
            self._entries[provider_id] = True

    def __contains__(self, provider_id: object) -> bool:
        with self._lock:
            return provider_id in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _provider_id(resource_id: str) -> str:
    return PROVIDER_ID_PREFIX + resource_id


def _as_utc(moment: datetime | None) -> datetime | None:
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def _node_claim_from_vm(vm: VirtualMachine, node_pool: str) -> NodeClaim:
    return NodeClaim(
        name=vm.name or "",
        labels={NODE_POOL_LABEL_KEY: node_pool},
        provider_id=_provider_id(vm.id or ""),
        creation_timestamp=_as_utc(vm.time_created),
    )


def _node_claim_from_node(node: Node) -> NodeClaim:
    return NodeClaim(
        name=node.name,
        labels=dict(node.labels),
        provider_id=node.provider_id,
    )


def _list_instances(virtual_machines: VirtualMachinesAPI, resource_group: str) -> list[NodeClaim]:
    """Return node claims for the machines in the resource group that carry a node pool tag."""
    prefix = make_vm_id(resource_group, "").lower()
    claims = []
    for vm in list(virtual_machines.instances.values()):
        if not vm.id or not vm.id.lower().startswith(prefix):
            continue
        node_pool = (vm.tags or {}).get(NODE_POOL_TAG_KEY)
        if node_pool is None:
            continue
        claims.append(_node_claim_from_vm(vm, node_pool))
    return claims


def _link_instance(
    virtual_machines: VirtualMachinesAPI, resource_group: str, node_claim: NodeClaim
) -> None:
    """Tag the claim's machine with its node pool, keeping the tags already there."""
    vm_name = _vm_name_from_provider_id(node_claim.provider_id)
    vm = virtual_machines.get(resource_group, vm_name)
    tags = dict(vm.tags or {})
    tags[NODE_POOL_TAG_KEY] = node_claim.labels.get(NODE_POOL_LABEL_KEY, "")
    virtual_machines.begin_update(resource_group, vm_name, VirtualMachineUpdate(tags=tags)).result()


def _parallelize(items: Sequence[T], work: Callable[[T], None]) -> list[Exception | None]:
    """Run work on every item across a bounded pool; return the error of each, or None."""

    def run(item: T) -> Exception | None:
        try:
            work(item)
        except Exception as exc:
            return exc
        return None

    if not items:
        return []
    with ThreadPoolExecutor(max_workers=min(_MAX_PARALLELISM, len(items))) as pool:
        return list(pool.map(run, items))


def _raise_combined(errors: Iterable[Exception | None]) -> None:
    failures = [err for err in errors if err is not None]
    if not failures:
        return
    if len(failures) == 1:
        raise failures[0]
    raise RuntimeError("; ".join(str(err) for err in failures)) from failures[0]


class LinkController:
    """Creates node claims for tagged machines and re-owned nodes that lack one."""

    def __init__(
        self,
        kube: KubeStore,
        virtual_machines: VirtualMachinesAPI,
        resource_group: str,
        cache_ttl: float = 60.0,
    ) -> None:
        self.kube = kube
        self.virtual_machines = virtual_machines
        self.resource_group = resource_group
        # Remembers recent links while the cluster view catches up.
        self.cache = _LinkedCache(cache_ttl)

    def name(self) -> str:
        return "nodeclaim.link"

    def reconcile(self) -> timedelta:
        """Link every unowned instance; return how long to wait before running again."""
        # Instances are listed before cluster objects so the cluster view is the fresher one.
        retrieved = _list_instances(self.virtual_machines, self.resource_group)
        node_claims = self.kube.list_node_claims()
        nodes = self.kube.list_nodes(NODE_POOL_LABEL_KEY)
        retrieved_ids = {claim.provider_id for claim in retrieved}
        retrieved.extend(
            _node_claim_from_node(node) for node in nodes if node.provider_id not in retrieved_ids
        )
        retrieved = [
            claim
            for claim in retrieved
            if claim.deletion_timestamp is None and claim.labels.get(NODE_POOL_LABEL_KEY, "")
        ]
        errors = _parallelize(retrieved, lambda claim: self._link(claim, node_claims))
        _raise_combined(errors)
        return timedelta.max

    def _link(self, retrieved: NodeClaim, existing: list[NodeClaim]) -> None:
        pool_name = retrieved.labels.get(NODE_POOL_LABEL_KEY, "")
        try:
            node_pool = self.kube.get_node_pool(pool_name)
        except ObjectNotFoundError:
            return
        if self.should_create_linked_node_claim(retrieved, existing):
            node_claim = NodeClaim(
                generate_name=f"{node_pool.name}-",
                annotations={NODE_CLAIM_LINKED_ANNOTATION_KEY: retrieved.provider_id},
                taints=copy.deepcopy(node_pool.taints),
                startup_taints=copy.deepcopy(node_pool.startup_taints),
                requirements=copy.deepcopy(node_pool.requirements),
                kubelet=copy.deepcopy(node_pool.kubelet),
                node_class_ref=node_pool.node_class_ref,
            )
            created = self.kube.create_node_claim(node_claim)
            _log.debug(
                "generated nodeclaim %s from cloudprovider for %s", created.name, retrieved.provider_id
            )
            self.cache.add(retrieved.provider_id)
        try:
            _link_instance(self.virtual_machines, self.resource_group, retrieved)
        except ResourceNotFoundError:
            pass

    def should_create_linked_node_claim(
        self, retrieved: NodeClaim, existing: Iterable[NodeClaim]
    ) -> bool:
        """Whether a node claim still has to be made for this instance."""
        if retrieved.provider_id in self.cache:
            return False
        for claim in existing:
            if (
                claim.annotations.get(NODE_CLAIM_LINKED_ANNOTATION_KEY, "") == retrieved.provider_id
                or claim.provider_id == retrieved.provider_id
            ):
                return False
        return True