from datetime import datetime, timedelta, timezone

import pytest

from karpazure.compute import VirtualMachine, VirtualMachinesAPI, make_vm_id
from karpazure.garbagecollection import GarbageCollectionController
from karpazure.link import NODE_POOL_TAG_KEY, LinkController
from karpazure.objects import NODE_CLAIM_LINKED_ANNOTATION_KEY, KubeStore, Node, NodeClaim

RESOURCE_GROUP = "test-rg"
REGION = "eastus"


def _store_vm(vms, name, age, tags=None):
    vm_id = make_vm_id(RESOURCE_GROUP, name)
    vms.instances[vm_id] = VirtualMachine(
        id=vm_id,
        name=name,
        location=REGION,
        tags={NODE_POOL_TAG_KEY: "default"} if tags is None else tags,
        time_created=datetime.now(timezone.utc) - age,
    )
    return vm_id


@pytest.fixture
def env():
    kube = KubeStore()
    vms = VirtualMachinesAPI()
    link = LinkController(kube, vms, RESOURCE_GROUP, cache_ttl=600.0)
    controller = GarbageCollectionController(kube, vms, RESOURCE_GROUP, link)
    return kube, vms, link, controller


def test_name(env):
    assert env[3].name() == "nodeclaim.garbagecollection"


def test_deletes_instance_without_owner(env):
    _, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    controller.reconcile()
    assert vm_id not in vms.instances


def test_keeps_instance_not_launched_by_node_claim(env):
    _, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10), tags={})
    controller.reconcile()
    assert vm_id in vms.instances


def test_deletes_instance_and_node(env):
    kube, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    kube.add(Node(name="node-a", provider_id="azure://" + vm_id))
    controller.reconcile()
    assert vm_id not in vms.instances
    assert kube.list_nodes() == []


def test_deletes_many_instances(env):
    _, vms, _, controller = env
    ids = [_store_vm(vms, f"vm-{i}", timedelta(minutes=10)) for i in range(100)]
    controller.reconcile()
    assert not any(vm_id in vms.instances for vm_id in ids)


def test_keeps_many_owned_instances(env):
    kube, vms, _, controller = env
    ids = []
    for i in range(100):
        vm_id = _store_vm(vms, f"vm-{i}", timedelta(minutes=10))
        kube.add(NodeClaim(name=f"claim-{i}", provider_id="azure://" + vm_id))
        ids.append(vm_id)
    controller.reconcile()
    assert all(vm_id in vms.instances for vm_id in ids)
    assert len(kube.list_node_claims()) == 100


def test_keeps_instance_within_resolution_window(env):
    _, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(0))
    controller.reconcile()
    assert vm_id in vms.instances


def test_keeps_instance_and_node_with_matching_claim(env):
    kube, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    provider_id = "azure://" + vm_id
    kube.add(NodeClaim(name="claim-a", provider_id=provider_id), Node(name="node-a", provider_id=provider_id))
    controller.reconcile()
    assert vm_id in vms.instances
    assert [n.name for n in kube.list_nodes()] == ["node-a"]


def test_keeps_instance_with_linking_claim(env):
    kube, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    kube.add(
        NodeClaim(name="claim-a", annotations={NODE_CLAIM_LINKED_ANNOTATION_KEY: "azure://" + vm_id})
    )
    controller.reconcile()
    assert vm_id in vms.instances


def test_keeps_recently_linked_instance(env):
    _, vms, link, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=1))
    link.cache.add("azure://" + vm_id)
    controller.reconcile()
    assert vm_id in vms.instances


def test_keeps_old_instance_that_was_recently_linked(env):
    _, vms, link, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    link.cache.add("azure://" + vm_id)
    controller.reconcile()
    assert vm_id in vms.instances


def test_requeue_slows_down_after_twenty_runs(env):
    controller = env[3]
    results = [controller.reconcile() for _ in range(21)]
    assert results[:20] == [timedelta(seconds=10)] * 20
    assert results[20] == timedelta(minutes=2)
    assert controller.successful_count == 21


def test_delete_failure_is_raised(env):
    _, vms, _, controller = env
    vm_id = _store_vm(vms, "vm-a", timedelta(minutes=10))
    vms.delete_behavior.begin_error.set(RuntimeError("delete failed"))
    with pytest.raises(RuntimeError, match="delete failed"):
        controller.reconcile()
    assert vm_id in vms.instances
    assert controller.successful_count == 1