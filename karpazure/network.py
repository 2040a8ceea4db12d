"""Network resource types and in-memory fakes of the network APIs."""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, NamedTuple

from .mocked import MockedLRO, MockPoller

_SUBSCRIPTION_ID = "subscriptionID"


class NotFoundError(LookupError):
    """The requested network resource does not exist."""


@dataclass
class NetworkInterface:
    """The parts of a network interface the provider works with."""

    id: str | None = None
    name: str | None = None
    location: str | None = None
    tags: dict[str, str] | None = None
    ip_configurations: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class LoadBalancer:
    """The parts of a load balancer the provider works with."""

    id: str | None = None
    name: str | None = None
    location: str | None = None
    backend_address_pools: list[str] = field(default_factory=list)


def make_network_interface_id(resource_group: str, interface_name: str) -> str:
    """Return the resource ID of a network interface."""
    return (
        f"/subscriptions/{_SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Network/networkInterfaces/{interface_name}"
    )


def make_load_balancer_id(resource_group: str, load_balancer_name: str) -> str:
    """Return the resource ID of a load balancer."""
    return (
        f"/subscriptions/{_SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Network/loadBalancers/{load_balancer_name}"
    )


def make_backend_address_pool_id(
    resource_group: str, load_balancer_name: str, pool_name: str
) -> str:
    """Return the resource ID of a load balancer's backend address pool."""
    return (
        f"{make_load_balancer_id(resource_group, load_balancer_name)}"
        f"/backendAddressPools/{pool_name}"
    )


class _InterfaceCreateInput(NamedTuple):
    resource_group: str
    interface_name: str
    interface: NetworkInterface
    options: Any


class NetworkInterfacesAPI:
    """An in-memory network interfaces API whose creation can be steered by tests."""

    def __init__(self) -> None:
        self.create_or_update_behavior: MockedLRO[
            _InterfaceCreateInput, NetworkInterface
        ] = MockedLRO()
        self.interfaces: dict[str, NetworkInterface] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear the creation behaviour and all stored interfaces."""
        self.create_or_update_behavior.reset()
        with self._lock:
            self.interfaces.clear()

    def begin_create_or_update(
        self,
        resource_group: str,
        interface_name: str,
        interface: NetworkInterface,
        options: Any = None,
    ) -> MockPoller[NetworkInterface]:
        """Store the interface under its resource ID, filling in the ID."""

        def create(inp: _InterfaceCreateInput) -> NetworkInterface:
            iface_id = make_network_interface_id(inp.resource_group, inp.interface_name)
            created = dataclasses.replace(inp.interface, id=iface_id)
            with self._lock:
                self.interfaces[iface_id] = created
            return created

        return self.create_or_update_behavior.invoke(
            _InterfaceCreateInput(resource_group, interface_name, interface, options), create
        )

    def get(
        self, resource_group: str, interface_name: str, options: Any = None
    ) -> NetworkInterface:
        """Return the stored interface; raise NotFoundError if absent."""
        iface_id = make_network_interface_id(resource_group, interface_name)
        with self._lock:
            iface = self.interfaces.get(iface_id)
        if iface is None:
            raise NotFoundError("not found")
        return iface

    def begin_delete(
        self, resource_group: str, interface_name: str, options: Any = None
    ) -> None:
        """Remove the stored interface, if any."""
        with self._lock:
            self.interfaces.pop(make_network_interface_id(resource_group, interface_name), None)


class LoadBalancersAPI:
    """An in-memory load balancers API."""

    def __init__(self) -> None:
        self.load_balancers: dict[str, LoadBalancer] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self.load_balancers.clear()

    def store(self, load_balancer: LoadBalancer) -> None:
        """Store a load balancer under its resource ID."""
        if not load_balancer.id:
            raise ValueError("load balancer has no id")
        with self._lock:
            self.load_balancers[load_balancer.id] = load_balancer

    def get(
        self, resource_group: str, load_balancer_name: str, options: Any = None
    ) -> LoadBalancer:
        """Return the stored load balancer; raise NotFoundError if absent."""
        lb_id = make_load_balancer_id(resource_group, load_balancer_name)
        with self._lock:
            lb = self.load_balancers.get(lb_id)
        if lb is None:
            raise NotFoundError("not found")
        return lb

    def list_pages(self, resource_group: str, options: Any = None) -> Iterator[list[LoadBalancer]]:
        """Yield a single page of every stored load balancer, sorted by ID."""
        with self._lock:
            page = sorted(self.load_balancers.values(), key=lambda lb: lb.id or "")
        yield page