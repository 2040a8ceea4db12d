"""Compute resource types and in-memory fakes of the compute APIs."""

from __future__ import annotations

import copy
import dataclasses
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, NamedTuple

from .atomic import AtomicPtrSlice
from .mocked import MockedFunction, MockedLRO, MockPoller

_SUBSCRIPTION_ID = "subscriptionID"


class ResourceNotFoundError(LookupError):
    """The requested cloud resource does not exist."""

    error_code = "ResourceNotFound"


@dataclass
class VirtualMachineIdentity:
    """Managed identities attached to a virtual machine."""

    type: str | None = None
    user_assigned_identities: dict[str, Any] = field(default_factory=dict)


@dataclass
class VirtualMachine:
    """The parts of a virtual machine the provider works with."""

    id: str | None = None
    name: str | None = None
    location: str | None = None
    tags: dict[str, str] | None = None
    zones: list[str] = field(default_factory=list)
    identity: VirtualMachineIdentity | None = None
    time_created: datetime | None = None


@dataclass
class VirtualMachineUpdate:
    """A partial update of a virtual machine."""

    tags: dict[str, str] | None = None
    identity: VirtualMachineIdentity | None = None


@dataclass
class VirtualMachineExtension:
    """An extension installed on a virtual machine."""

    id: str | None = None
    name: str | None = None
    location: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)


def make_vm_id(resource_group: str, vm_name: str) -> str:
    """Return the resource ID of a virtual machine."""
    return (
        f"/subscriptions/{_SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Compute/virtualMachines/{vm_name}"
    )


def _make_vm_extension_id(resource_group: str, vm_name: str, extension_name: str) -> str:
    return f"{make_vm_id(resource_group, vm_name)}/extensions/{extension_name}"


class _VMCreateInput(NamedTuple):
    resource_group: str
    vm_name: str
    vm: VirtualMachine
    options: Any


class _VMUpdateInput(NamedTuple):
    resource_group: str
    vm_name: str
    updates: VirtualMachineUpdate
    options: Any


class _VMDeleteInput(NamedTuple):
    resource_group: str
    vm_name: str
    options: Any


class _VMGetInput(NamedTuple):
    resource_group: str
    vm_name: str
    options: Any


class _ExtensionCreateInput(NamedTuple):
    resource_group: str
    vm_name: str
    extension_name: str
    extension: VirtualMachineExtension
    options: Any


class VirtualMachinesAPI:
    """An in-memory virtual machines API whose calls can be steered by tests."""

    def __init__(self) -> None:
        self.create_or_update_behavior: MockedLRO[_VMCreateInput, VirtualMachine] = MockedLRO()
        self.update_behavior: MockedLRO[_VMUpdateInput, VirtualMachine] = MockedLRO()
        self.delete_behavior: MockedLRO[_VMDeleteInput, None] = MockedLRO()
        self.get_behavior: MockedFunction[_VMGetInput, VirtualMachine] = MockedFunction()
        self.instances: dict[str, VirtualMachine] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear all behaviours and stored machines."""
        self.create_or_update_behavior.reset()
        self.delete_behavior.reset()
        self.get_behavior.reset()
        self.update_behavior.reset()
        with self._lock:
            self.instances.clear()

    def begin_create_or_update(
        self,
        resource_group: str,
        vm_name: str,
        vm: VirtualMachine,
        options: Any = None,
    ) -> MockPoller[VirtualMachine]:
        """Store the machine under its ID, filling in ID, name and creation time."""

        def create(inp: _VMCreateInput) -> VirtualMachine:
            created = dataclasses.replace(inp.vm)
            vm_id = make_vm_id(inp.resource_group, inp.vm_name)
            created.id = vm_id
            created.name = inp.vm_name
            if created.time_created is None:
                created.time_created = datetime.now(timezone.utc)
            with self._lock:
                self.instances[vm_id] = created
            return created

        return self.create_or_update_behavior.invoke(
            _VMCreateInput(resource_group, vm_name, vm, options), create
        )

    def begin_update(
        self,
        resource_group: str,
        vm_name: str,
        updates: VirtualMachineUpdate,
        options: Any = None,
    ) -> MockPoller[VirtualMachine]:
        """Replace the tags and merge identities into a stored machine."""

        def update(inp: _VMUpdateInput) -> VirtualMachine:
            vm_id = make_vm_id(inp.resource_group, inp.vm_name)
            with self._lock:
                stored = self.instances.get(vm_id)
                if stored is None:
                    raise ResourceNotFoundError(vm_id)
                vm = copy.deepcopy(stored)
                vm.tags = inp.updates.tags
                new_identity = inp.updates.identity
                if new_identity is not None:
                    if vm.identity is None:
                        vm.identity = VirtualMachineIdentity()
                    if new_identity.type is not None:
                        vm.identity.type = new_identity.type
                    vm.identity.user_assigned_identities.update(
                        new_identity.user_assigned_identities
                    )
                self.instances[vm_id] = vm
            return vm

        return self.update_behavior.invoke(
            _VMUpdateInput(resource_group, vm_name, updates, options), update
        )

    def get(self, resource_group: str, vm_name: str, options: Any = None) -> VirtualMachine:
        """Return the stored machine; raise ResourceNotFoundError if absent."""

        def fetch(inp: _VMGetInput) -> VirtualMachine:
            vm_id = make_vm_id(inp.resource_group, inp.vm_name)
            with self._lock:
                vm = self.instances.get(vm_id)
            if vm is None:
                raise ResourceNotFoundError(vm_id)
            return vm

        return self.get_behavior.invoke(_VMGetInput(resource_group, vm_name, options), fetch)

    def begin_delete(
        self, resource_group: str, vm_name: str, options: Any = None
    ) -> MockPoller[None]:
        """Remove the stored machine, if any."""

        def delete(inp: _VMDeleteInput) -> None:
            with self._lock:
                self.instances.pop(make_vm_id(inp.resource_group, inp.vm_name), None)
            return None

        return self.delete_behavior.invoke(
            _VMDeleteInput(resource_group, vm_name, options), delete
        )


class VirtualMachineExtensionsAPI:
    """A virtual machine extensions API that echoes extensions back with an ID."""

    def __init__(self) -> None:
        self.create_or_update_behavior: MockedLRO[
            _ExtensionCreateInput, VirtualMachineExtension
        ] = MockedLRO()

    def reset(self) -> None:
        self.create_or_update_behavior.reset()

    def begin_create_or_update(
        self,
        resource_group: str,
        vm_name: str,
        extension_name: str,
        extension: VirtualMachineExtension,
        options: Any = None,
    ) -> MockPoller[VirtualMachineExtension]:
        """Return the extension with its resource ID filled in."""

        def create(inp: _ExtensionCreateInput) -> VirtualMachineExtension:
            return dataclasses.replace(
                inp.extension,
                id=_make_vm_extension_id(inp.resource_group, inp.vm_name, inp.extension_name),
            )

        return self.create_or_update_behavior.invoke(
            _ExtensionCreateInput(resource_group, vm_name, extension_name, extension, options),
            create,
        )


class CommunityGalleryImageVersionsAPI:
    """A community gallery API that lists the image versions it was given."""

    def __init__(self) -> None:
        self.image_versions: AtomicPtrSlice[Any] = AtomicPtrSlice()

    def reset(self) -> None:
        self.image_versions.reset()

    def list_pages(
        self, location: str, gallery: str, image: str, options: Any = None
    ) -> Iterator[list[Any]]:
        """Yield a single page holding every stored image version."""
        yield self.image_versions.values()