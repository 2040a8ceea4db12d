# karpazure

This package holds node claim controllers for an Azure node autoscaler. It also holds the
in-memory fakes of the Azure compute, network and pricing APIs that those
controllers work against.

Nothing in the package talks to a real cloud or a real cluster:

- The cluster side is `KubeStore`, a small thread-safe in-memory store of node claims,
  nodes and node pools.
- The cloud side is a set of thread-safe fakes. You can tell each one what to return, or
  which error to raise.

## Installation

```
pip install karpazure
```

To run the tests as well:

```
pip install "karpazure[test]"
pytest
```

## Modules

### `karpazure.atomic`

Lock-guarded containers for mock data:

- `AtomicPtr` holds one value. `clone()` hands it out as a deep copy.
- `AtomicError` holds an error that `get()` returns a limited number of times.
  - `set(err, max_calls)` defaults to one call.
  - A `max_calls` of zero or less means the error never runs out.
- `AtomicPtrStack` is a stack that stores deep copies. It has `add`, `pop` and `len()`.
- `AtomicPtrSlice` is a list that stores deep copies and hands them out.
  - It has `append`, `get` and `values`.
  - `get` returns `None` when the index is out of range.

### `karpazure.mocked`

- `MockedFunction` records its inputs and counts successful and failed calls:
  `calls()`, `successful_calls()` and `failed_calls()`. On each call,
  `invoke(input, default)` does the first of these that applies:
  1. It raises the injected error.
  2. It returns a copy of the preset output.
  3. It returns `default(input)`.
- `MockedLRO` works the same way for long-running operations and returns a `MockPoller`.
  - An error in `begin_error` is raised when the operation begins.
  - An error in `error`, or from the default, is raised by the poller's `result()` or `poll()`.

### `karpazure.metrics`

- `Counter` and `CounterVec` are simple labelled counters.
- `IMAGE_SELECTION_ERROR_COUNT` counts image selection errors. Its full name is
  `karpenter_image_selection_error_count` and it has one label, `family`.
- `collect_and_count()` returns the number of label combinations in use.

### `karpazure.pricing`

- `PriceItem` and `ProductsPricePage` hold price list data.
- `FakePricingAPI.get_products_price_pages(filters, callback)` does one of three things:
  - It passes the configured page to `callback`.
  - It raises the configured error.
  - It raises `LookupError` when no data is set.
- `new_product_price` and `new_spot_product_price` build price items. Spot items have a
  SKU name ending in `" Spot"`.

### `karpazure.compute`

- `VirtualMachine`, `VirtualMachineIdentity`, `VirtualMachineUpdate` and
  `VirtualMachineExtension` are dataclasses.
- `make_vm_id(resource_group, vm_name)` builds a resource ID under the subscription
  `subscriptionID`.
- `VirtualMachinesAPI` keeps machines in `instances`, keyed by resource ID.
  - `begin_create_or_update` fills in the ID, the name and the creation time.
  - `begin_update` replaces the tags and merges in identities.
  - `get` and `begin_delete` look up and remove stored machines.
  - A missing machine gives `ResourceNotFoundError`.
- `VirtualMachineExtensionsAPI` echoes extensions back with their ID filled in.
- `CommunityGalleryImageVersionsAPI.list_pages` yields one page holding the stored image
  versions.

### `karpazure.network`

- `NetworkInterfacesAPI` stores interfaces by ID and returns them through `get`.
- `LoadBalancersAPI` has `store`, `get`, and `list_pages`, which yields one page sorted by
  ID.
- Missing objects raise `NotFoundError`.
- `make_network_interface_id`, `make_load_balancer_id` and `make_backend_address_pool_id`
  build resource IDs.

### `karpazure.objects`

- `NodeClaim`, `Node` and `NodePool` are cluster objects.
- `KubeStore` keeps these objects in memory. It has these operations:
  - `add`
  - `list_node_claims`
  - `list_nodes`, which can filter by label key
  - `get_node_pool`
  - `create_node_claim`, which generates a name from `generate_name`
  - `patch_node_claim`
  - `delete_node`
- A missing object raises `ObjectNotFoundError`.

### `karpazure.inplaceupdate`

- `hash_from_vm` and `hash_from_node_claim` hash the set of user-assigned identities. The
  result does not depend on the order of the identities.
- `calculate_vm_patch(settings, vm)` returns an update that adds the identities from
  `Settings.node_identities` that the machine is missing. It returns `None` when nothing is
  missing. It never removes identities.
- `InPlaceUpdateController.reconcile(node_claim)` works as follows:
  - It skips claims that are deleted or that have no provider ID.
  - It skips claims whose `karpenter.azure.com/inplace-update-hash` annotation already
    matches the goal hash.
  - Otherwise it applies the patch, if one is needed, and stores the goal hash on the claim.

### `karpazure.link`

`LinkController.reconcile()` handles machines in the resource group that carry the
`karpenter.sh_nodepool` tag. It also handles nodes labelled `karpenter.sh/nodepool` whose
machine was not found.

For each of these that has no node claim, and whose node pool exists, it does the following:

- It creates a node claim from the pool's template, named `<pool>-<suffix>`.
- It annotates that claim with `karpenter.azure.com/nodeclaim-linked` set to the provider
  ID (`azure://` followed by the resource ID).
- It remembers the link in a cache with a time-to-live.
- It tags the machine with its node pool and keeps the machine's existing tags.

The method returns `timedelta.max`, meaning the controller need not run again.

### `karpazure.garbagecollection`

`GarbageCollectionController.reconcile()` deletes every tagged machine that meets all of
these conditions:

- It is older than five minutes.
- No node claim owns it, either by provider ID or by link annotation.
- It was not linked recently.

It also deletes a node backed by such a machine.

It returns the time to wait before the next run: ten seconds for the first twenty runs,
then two minutes.

Errors from the work done in parallel are combined:

- A single failure is raised as it is.
- Several failures are raised as one `RuntimeError`.

## Examples

Create a machine and read back its ID:

```python
from karpazure.compute import VirtualMachine, VirtualMachinesAPI, make_vm_id

vms = VirtualMachinesAPI()
vm = vms.begin_create_or_update("my-rg", "vm-a", VirtualMachine()).result()
assert vm.id == make_vm_id("my-rg", "vm-a")
```

Inject a failure:

```python
vms.create_or_update_behavior.error.set(RuntimeError("quota exceeded"), 1)
poller = vms.begin_create_or_update("my-rg", "vm-b", VirtualMachine())
# poller.result() raises RuntimeError; the next call succeeds.
```

Link a tagged machine to a new node claim:

```python
from karpazure.compute import VirtualMachine, VirtualMachinesAPI
from karpazure.link import NODE_POOL_TAG_KEY, LinkController
from karpazure.objects import KubeStore, NodePool

kube = KubeStore()
vms = VirtualMachinesAPI()
vms.begin_create_or_update("my-rg", "vm-a", VirtualMachine(tags={NODE_POOL_TAG_KEY: "default"}))
kube.add(NodePool(name="default"))
LinkController(kube, vms, "my-rg").reconcile()
assert len(kube.list_node_claims()) == 1
```

Call `reset()` on a fake between tests, so that one test does not leak state into the next.

## What this package does not do

There is no command, no operator or controller manager to run the controllers, and no
client for the real Azure or Kubernetes APIs. The controllers are plain classes that you
call yourself, with a `KubeStore` and the fakes.

Counters are kept in memory and are not exported to any metrics endpoint. Provisioning
new machines, instance type and pricing selection, and image resolution are not part of
the package.