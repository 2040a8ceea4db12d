from datetime import datetime, timedelta, timezone

import pytest

from karpazure.compute import VirtualMachine, VirtualMachinesAPI, make_vm_id
from karpazure.inplaceupdate import _vm_name_from_provider_id
from karpazure.link import NODE_POOL_TAG_KEY, LinkController
from karpazure.objects import (
    NODE_CLAIM_LINKED_ANNOTATION_KEY,
    NODE_POOL_LABEL_KEY,
    KubeStore,
    Node,
    NodeClaim,
    NodePool,
)

RESOURCE_GROUP = "test-rg"
REGION = "eastus"


def _store_vm(vms, name, tags):
    vm_id = make_vm_id(RESOURCE_GROUP, name)
    vms.instances[vm_id] = VirtualMachine(
        id=vm_id,
        name=name,
        location=REGION,
        tags=tags,
        zones=[f"{REGION}-1a"],
        time_created=datetime.now(timezone.utc),
    )
    return vm_id


@pytest.fixture
def env():
    kube = KubeStore()
    vms = VirtualMachinesAPI()
    controller = LinkController(kube, vms, RESOURCE_GROUP)
    pool = NodePool(name="default", node_class_ref="default")
    vm_id = _store_vm(vms, "vm-a", {NODE_POOL_TAG_KEY: pool.name})
    return kube, vms, controller, pool, vm_id, "azure://" + vm_id


def _tag_exists(vms, name):
    return NODE_POOL_TAG_KEY in (vms.get(RESOURCE_GROUP, name).tags or {})


def test_name(env):
    assert env[2].name() == "nodeclaim.link"


def test_links_instance_with_basic_spec(env):
    kube, vms, controller, pool, _, provider_id = env
    pool.taints = [{"key": "testkey", "value": "testvalue", "effect": "NoSchedule"}]
    pool.startup_taints = [{"key": "othertestkey", "value": "othertestvalue", "effect": "NoExecute"}]
    kube.add(pool)
    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 1
    assert claims[0].taints == pool.taints
    assert claims[0].startup_taints == pool.startup_taints
    assert claims[0].annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] == provider_id
    assert claims[0].name.startswith("default-")
    assert _tag_exists(vms, "vm-a")


def test_links_instance_with_requirements(env):
    kube, vms, controller, pool, _, provider_id = env
    pool.requirements = [
        ("topology.kubernetes.io/zone", "In", ["test-zone-1a", "test-zone-1b", "test-zone-1c"]),
        ("kubernetes.io/os", "In", ["linux", "windows"]),
        ("kubernetes.io/arch", "In", ["amd64"]),
    ]
    kube.add(pool)
    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 1
    assert len(claims[0].requirements) == 3
    assert set(map(str, claims[0].requirements)) == set(map(str, pool.requirements))
    assert claims[0].annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] == provider_id


def test_links_instance_with_kubelet(env):
    kube, vms, controller, pool, _, provider_id = env
    pool.kubelet = {"cluster_dns": ["10.0.0.1"], "max_pods": 10}
    kube.add(pool)
    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 1
    assert claims[0].kubelet["cluster_dns"][0] == "10.0.0.1"
    assert claims[0].kubelet["max_pods"] == 10
    assert claims[0].annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] == provider_id
    assert _tag_exists(vms, "vm-a")


def test_links_many_instances(env):
    kube, vms, controller, pool, _, _ = env
    vms.reset()
    kube.add(pool)
    names = [f"vm-{i}" for i in range(100)]
    for name in names:
        _store_vm(vms, name, {NODE_POOL_TAG_KEY: pool.name})

    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 100
    linked = {
        _vm_name_from_provider_id(claim.annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY])
        for claim in claims
    }
    assert linked == set(names)
    assert all(_tag_exists(vms, name) for name in names)


def test_links_instance_without_node_class(env):
    kube, vms, controller, pool, _, provider_id = env
    kube.add(pool)
    controller.reconcile()

    claims = kube.list_node_claims()
    assert [c.annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] for c in claims] == [provider_id]
    assert _tag_exists(vms, "vm-a")


def test_links_reowned_node(env):
    kube, vms, controller, pool, _, _ = env
    vms.reset()
    vm_id = _store_vm(vms, "vm-a", {})
    provider_id = "azure://" + vm_id
    node = Node(name="node-a", labels={NODE_POOL_LABEL_KEY: pool.name}, provider_id=provider_id)
    kube.add(node, pool)

    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 1
    assert claims[0].annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] == provider_id
    assert vms.get(RESOURCE_GROUP, "vm-a").tags[NODE_POOL_TAG_KEY] == pool.name


def test_does_not_link_untagged_instance(env):
    kube, vms, controller, pool, vm_id, _ = env
    vms.instances[vm_id].tags = {}
    kube.add(pool)
    controller.reconcile()
    assert kube.list_node_claims() == []


def test_does_not_link_without_node_pool(env):
    kube, vms, controller, _, vm_id, _ = env
    controller.reconcile()
    assert kube.list_node_claims() == []
    assert vms.get(RESOURCE_GROUP, "vm-a").id == vm_id


def test_does_not_link_already_linked_instance(env):
    kube, vms, controller, pool, _, provider_id = env
    kube.add(pool, NodeClaim(name="existing", provider_id=provider_id))
    assert len(kube.list_node_claims()) == 1
    controller.reconcile()
    claims = kube.list_node_claims()
    assert [c.name for c in claims] == ["existing"]


def test_keeps_existing_tags(env):
    kube, vms, controller, pool, vm_id, provider_id = env
    vms.instances[vm_id].tags["testKey"] = "testVal"
    kube.add(pool)
    controller.reconcile()

    claims = kube.list_node_claims()
    assert len(claims) == 1
    assert claims[0].annotations[NODE_CLAIM_LINKED_ANNOTATION_KEY] == provider_id
    tags = vms.get(RESOURCE_GROUP, "vm-a").tags
    assert tags["testKey"] == "testVal"
    assert tags[NODE_POOL_TAG_KEY] == pool.name


def test_second_reconcile_does_not_duplicate(env):
    kube, _, controller, pool, _, _ = env
    kube.add(pool)
    controller.reconcile()
    controller.reconcile()
    assert len(kube.list_node_claims()) == 1


def test_reconcile_never_requeues(env):
    assert env[2].reconcile() == timedelta.max


def test_should_create_when_unknown(env):
    _, _, controller, _, _, provider_id = env
    retrieved = NodeClaim(provider_id=provider_id)
    assert controller.should_create_linked_node_claim(retrieved, []) is True


def test_should_not_create_when_cached(env):
    _, _, controller, _, _, provider_id = env
    controller.cache.add(provider_id)
    assert controller.should_create_linked_node_claim(NodeClaim(provider_id=provider_id), []) is False


def test_should_not_create_when_annotated_claim_exists(env):
    _, _, controller, _, _, provider_id = env
    existing = [NodeClaim(annotations={NODE_CLAIM_LINKED_ANNOTATION_KEY: provider_id})]
    assert controller.should_create_linked_node_claim(NodeClaim(provider_id=provider_id), existing) is False


def test_should_not_create_when_claim_has_provider_id(env):
    _, _, controller, _, _, provider_id = env
    existing = [NodeClaim(provider_id=provider_id)]
    assert controller.should_create_linked_node_claim(NodeClaim(provider_id=provider_id), existing) is False