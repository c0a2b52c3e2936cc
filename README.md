# cloudcontrollers

Two reconciliation controllers that keep a cluster's view of its nodes in
line with what a cloud provider reports. Both are plain Python classes that
work against objects you supply: a node lister, a cluster client and a
cloud provider (or its routes interface).

## Node lifecycle

`cloudcontrollers.nodelifecycle.CloudNodeLifecycleController` checks every
node returned by the node lister:

- A node whose `Ready` condition is `True` has the shutdown taint
  (`SHUTDOWN_TAINT`, effect `NoSchedule`) removed.
- A node that is not ready (condition `False`, `Unknown` or missing) and no
  longer exists at the provider is deleted. A `DeletingNode` event is
  recorded, and a `DeletingNodeFailed` event as well if the delete fails.
- A node that is not ready, still exists and is shut down gets the shutdown
  taint.

Errors from the provider or the client are logged and the node is skipped.
`get_provider_id` uses the node's `provider_id` when set; otherwise it asks
`instances_v2().instance_metadata(node)`, or falls back to
`instances().instance_id(name)` and builds `"<provider_name>://<id>"`.
`InstanceNotFound` is treated as "the instance is gone", and
`ProviderNotImplemented` from a shutdown check as "not shut down".

The constructor raises `ValueError` if the client or cloud is `None`, or if
the cloud offers neither `instances()` nor `instances_v2()`.

```python
import threading
from cloudcontrollers.nodelifecycle import CloudNodeLifecycleController

controller = CloudNodeLifecycleController(
    node_lister, kube_client, cloud, node_monitor_period=5.0, recorder=None
)
controller.monitor_nodes()          # one pass

stop = threading.Event()
controller.run(stop)                # loops until stop is set
```

The collaborators it expects:

- `node_lister()` returns an iterable of `Node`.
- `kube_client` has `delete_node(name)`, `add_or_update_taint(name, taint)`
  and `remove_taint(name, node, taint)`.
- `cloud` has `instances()` and `instances_v2()` (each an implementation or
  `None`) and `provider_name()`.

## Routes

`cloudcontrollers.route.RouteController` reconciles cloud routes against
the pod CIDRs assigned to nodes. For each node CIDR it decides a
`RouteAction` (`keep`, `add`, `update` or `remove`) with
`get_route_action`, deletes blackhole or stale routes whose CIDR falls in
the cluster CIDRs, creates missing routes on a pool of at most 200 worker
threads, and then sets each node's `NetworkUnavailable` condition. A failed
route creation records a `FailedToCreateRoute` warning event. Condition
updates that raise `ConflictError` are retried up to five times with
jittered backoff.

Cluster CIDRs may be given as strings or `ipaddress` network objects; an
empty list raises `ValueError`.

```python
from cloudcontrollers.route import RouteController

rc = RouteController(
    routes, kube_client, node_lister, "my-cluster", ["10.120.0.0/16"], recorder=None
)
rc.reconcile_node_routes()          # one pass

import threading
stop = threading.Event()
rc.run(300.0, stop)                 # every 300 s until stop is set
```

The collaborators it expects:

- `routes` has `list_routes(cluster_name)`,
  `create_route(cluster_name, name_hint, route)` and
  `delete_route(cluster_name, route)`.
- `kube_client` has `set_node_condition(node_name, condition)`.
- `node_lister()` returns an iterable of `Node`.

The helpers `get_route_action` and `equal_node_addrs` can be used on their
own.

## Data model

`cloudcontrollers.model` holds the data types used by both controllers
(`Node`, `NodeCondition`, `ConditionStatus`, `NodeAddress`, `Taint`,
`Route`, `ObjectReference`, `Event`), an in-memory, thread-safe
`EventRecorder` whose `events` property lists what was recorded, the
`get_node_condition` helper, and the errors providers raise
(`CloudProviderError`, `InstanceNotFound`, `ProviderNotImplemented`,
`ConflictError`).

## What this package does not do

It has no cluster API client, no node cache or watch, and no cloud provider
implementations: you pass in objects that provide the calls listed above.
Events stay in the `EventRecorder`; nothing sends them anywhere. There is no
command-line program; the controllers are started from your own code.

## Tests

```
pip install -e ".[test]"
pytest
```