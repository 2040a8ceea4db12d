"""Keeps running virtual machines in line with settings that can change in place."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from .compute import (
    VirtualMachine,
    VirtualMachineIdentity,
    VirtualMachinesAPI,
    VirtualMachineUpdate,
)
from .objects import KubeStore, NodeClaim, ObjectNotFoundError

ANNOTATION_IN_PLACE_UPDATE_HASH = "karpenter.azure.com/inplace-update-hash"

_log = logging.getLogger(__name__)

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_SHORT_ESCAPES = {'"': '\\"', "\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_VM_NAME_PATTERN = re.compile(r"/virtualMachines/([^/]+)$", re.IGNORECASE)


@dataclass
class Settings:
    """Cluster-wide settings that apply to every node."""

    node_identities: list[str] = field(default_factory=list)


def _json_string(text: str) -> str:
    parts = []
    for ch in text:
        if ch in _SHORT_ESCAPES:
            parts.append(_SHORT_ESCAPES[ch])
        elif ch < " " or ch in "<>&\u2028\u2029":
            parts.append(f"\\u{ord(ch):04x}")
        else:
            parts.append(ch)
    return '"' + "".join(parts) + '"'


def _encode_fields(identities: Iterable[str]) -> bytes:
    unique = sorted(set(identities))
    if not unique:
        return b"{}"
    members = ",".join(f"{_json_string(ident)}:{{}}" for ident in unique)
    return ('{"identities":{' + members + "}}").encode("utf-8")


def _fnv1a32(data: bytes) -> int:
    value = _FNV32_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value


def _calculate_hash(identities: Iterable[str]) -> str:
    return str(_fnv1a32(_encode_fields(identities)))


def hash_from_vm(vm: VirtualMachine) -> str:
    """Hash the in-place-updatable fields of a virtual machine."""
    identities = vm.identity.user_assigned_identities.keys() if vm.identity else ()
    return _calculate_hash(identities)


def hash_from_node_claim(settings: Settings, node_claim: NodeClaim | None) -> str:
    """Hash the goal state of the in-place-updatable fields for a node claim."""
    return _calculate_hash(settings.node_identities)


def _identity_for(identity_ids: list[str]) -> VirtualMachineIdentity:
    return VirtualMachineIdentity(
        type="UserAssigned",
        user_assigned_identities={ident: {} for ident in identity_ids},
    )


def calculate_vm_patch(settings: Settings, vm: VirtualMachine) -> VirtualMachineUpdate | None:
    """Return the update adding missing identities, or None if nothing is missing.

    Identities are never removed: they cannot be patched away, and users may
    have added some by hand.
    """
    current = set(vm.identity.user_assigned_identities) if vm.identity else set()
    to_add = [ident for ident in settings.node_identities if ident not in current]
    if not to_add:
        return None
    return VirtualMachineUpdate(identity=_identity_for(to_add))


def _vm_name_from_provider_id(provider_id: str) -> str:
    match = _VM_NAME_PATTERN.search(provider_id)
    if match is None:
        raise ValueError(f"cannot parse virtual machine name from provider id {provider_id!r}")
    return match.group(1)


class InPlaceUpdateController:
    """Applies in-place updates to the virtual machines behind node claims."""

    def __init__(
        self,
        kube: KubeStore,
        virtual_machines: VirtualMachinesAPI,
        resource_group: str,
        settings: Settings | None = None,
    ) -> None:
        self.kube = kube
        self.virtual_machines = virtual_machines
        self.resource_group = resource_group
        self.settings = settings if settings is not None else Settings()

    def name(self) -> str:
        return "nodeclaim.inplaceupdate"

    def reconcile(self, node_claim: NodeClaim) -> None:
        """Bring the node claim's machine to the goal state and record the goal hash."""
        if node_claim.deletion_timestamp is not None:
            return
        if not node_claim.provider_id:
            return

        goal_hash = hash_from_node_claim(self.settings, node_claim)
        actual_hash = node_claim.annotations.get(ANNOTATION_IN_PLACE_UPDATE_HASH, "")
        _log.debug("goal hash is: %r, actual hash is: %r", goal_hash, actual_hash)
        if goal_hash == actual_hash:
            return

        vm_name = _vm_name_from_provider_id(node_claim.provider_id)
        vm = self.virtual_machines.get(self.resource_group, vm_name)

        update = calculate_vm_patch(self.settings, vm)
        _log.debug("applying patch to Azure VM: %r", update)
        if update is not None:
            self.virtual_machines.begin_update(self.resource_group, vm_name, update).result()

        # The goal shape now matches the machine, whether or not anything changed.
        node_claim.annotations[ANNOTATION_IN_PLACE_UPDATE_HASH] = goal_hash
        try:
            self.kube.patch_node_claim(node_claim)
        except ObjectNotFoundError:
            pass