"""Deletes cloud instances that no node claim owns."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .compute import ResourceNotFoundError, VirtualMachinesAPI
from .inplaceupdate import _vm_name_from_provider_id
from .link import LinkController, _list_instances, _parallelize, _raise_combined
from .objects import (
    NODE_CLAIM_LINKED_ANNOTATION_KEY,
    KubeStore,
    Node,
    NodeClaim,
    ObjectNotFoundError,
)

_RESOLUTION_WINDOW = timedelta(minutes=5)
_FAST_REQUEUE = timedelta(seconds=10)
_SLOW_REQUEUE = timedelta(minutes=2)
_FAST_REQUEUE_LIMIT = 20

_log = logging.getLogger(__name__)


def _older_than_window(claim: NodeClaim, now: datetime) -> bool:
    if claim.creation_timestamp is None:
        return True
    return now - claim.creation_timestamp > _RESOLUTION_WINDOW


class GarbageCollectionController:
    """Removes tagged machines (and their nodes) that have gone unowned for too long."""

    def __init__(
        self,
        kube: KubeStore,
        virtual_machines: VirtualMachinesAPI,
        resource_group: str,
        link_controller: LinkController,
    ) -> None:
        self.kube = kube
        self.virtual_machines = virtual_machines
        self.resource_group = resource_group
        self.link_controller = link_controller
        # Requeue more aggressively while the controller is young.
        self.successful_count = 0

    def name(self) -> str:
        return "nodeclaim.garbagecollection"

    def reconcile(self) -> timedelta:
        """Collect unowned instances; return how long to wait before running again."""
        # Instances are listed first so the cluster objects read afterwards are fresher.
        retrieved = _list_instances(self.virtual_machines, self.resource_group)
        managed = [claim for claim in retrieved if claim.deletion_timestamp is None]
        node_claims = self.kube.list_node_claims()
        nodes = self.kube.list_nodes()
        resolved = {
            claim.provider_id or claim.annotations.get(NODE_CLAIM_LINKED_ANNOTATION_KEY, "")
            for claim in node_claims
            if claim.provider_id or claim.annotations.get(NODE_CLAIM_LINKED_ANNOTATION_KEY, "")
        }
        now = datetime.now(timezone.utc)
        candidates = [
            claim
            for claim in managed
            if claim.provider_id not in self.link_controller.cache
            and claim.provider_id not in resolved
            and _older_than_window(claim, now)
        ]
        errors = _parallelize(candidates, lambda claim: self._garbage_collect(claim, nodes))
        self.successful_count += 1
        requeue = _FAST_REQUEUE if self.successful_count <= _FAST_REQUEUE_LIMIT else _SLOW_REQUEUE
        _raise_combined(errors)
        return requeue

    def _garbage_collect(self, node_claim: NodeClaim, nodes: list[Node]) -> None:
        vm_name = _vm_name_from_provider_id(node_claim.provider_id)
        try:
            self.virtual_machines.begin_delete(self.resource_group, vm_name).result()
        except ResourceNotFoundError:
            return
        _log.debug("garbage collected cloudprovider instance %s", node_claim.provider_id)

        # Removing the node right away lets scheduling move on sooner.
        node = next((n for n in nodes if n.provider_id == node_claim.provider_id), None)
        if node is None:
            return
        try:
            self.kube.delete_node(node)
        except ObjectNotFoundError:
            return
        _log.debug("garbage collected node %s", node.name)