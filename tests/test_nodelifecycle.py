import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from cloudcontrollers.model import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    NODE_READY,
    CloudProviderError,
    ConditionStatus,
    EventRecorder,
    InstanceNotFound,
    Node,
    NodeCondition,
)
from cloudcontrollers.nodelifecycle import SHUTDOWN_TAINT, CloudNodeLifecycleController


@dataclass
class FakeCloud:
    exists_by_provider_id: bool = False
    err_by_provider_id: Exception | None = None
    node_shutdown: bool = False
    err_shutdown_by_provider_id: Exception | None = None
    ext_id: dict = field(default_factory=dict)
    ext_id_err: dict = field(default_factory=dict)
    provider_ids: dict = field(default_factory=dict)
    enable_instances_v2: bool = False
    supports_instances: bool = True

    def provider_name(self):
        return "fake"

    def instances(self):
        return self if self.supports_instances else None

    def instances_v2(self):
        return self if self.enable_instances_v2 else None

    def instance_id(self, node_name):
        if node_name in self.ext_id_err:
            raise self.ext_id_err[node_name]
        return self.ext_id.get(node_name, "")

    def instance_exists_by_provider_id(self, provider_id):
        if self.err_by_provider_id is not None:
            raise self.err_by_provider_id
        return self.exists_by_provider_id

    def instance_shutdown_by_provider_id(self, provider_id):
        if self.err_shutdown_by_provider_id is not None:
            raise self.err_shutdown_by_provider_id
        return self.node_shutdown

    def instance_exists(self, node):
        return self.instance_exists_by_provider_id(node.provider_id)

    def instance_shutdown(self, node):
        return self.instance_shutdown_by_provider_id(node.provider_id)

    def instance_metadata(self, node):
        return SimpleNamespace(provider_id=self.provider_ids.get(node.name, ""))


class FakeKube:
    def __init__(self, *nodes, fail_delete=False):
        self.nodes = {n.name: n for n in nodes}
        self.fail_delete = fail_delete

    def list_nodes(self):
        return list(self.nodes.values())

    def delete_node(self, name):
        if self.fail_delete:
            raise RuntimeError("delete refused")
        del self.nodes[name]

    def add_or_update_taint(self, name, taint):
        node = self.nodes[name]
        node.taints = [t for t in node.taints if (t.key, t.effect) != (taint.key, taint.effect)]
        node.taints.append(taint)

    def remove_taint(self, name, node, taint):
        stored = self.nodes[name]
        stored.taints = [t for t in stored.taints if (t.key, t.effect) != (taint.key, taint.effect)]


def make_node(status, provider_id=""):
    when = datetime(2015, 1, 1, 12, tzinfo=timezone.utc)
    return Node(
        name="node0",
        provider_id=provider_id,
        creation_timestamp=datetime(2012, 1, 1, tzinfo=timezone.utc),
        conditions=[
            NodeCondition(
                type=NODE_READY,
                status=status,
                last_heartbeat_time=when,
                last_transition_time=when,
            )
        ],
    )


def make_controller(kube, cloud, recorder=None):
    return CloudNodeLifecycleController(kube.list_nodes, kube, cloud, 1.0, recorder)


F, T, U = ConditionStatus.FALSE, ConditionStatus.TRUE, ConditionStatus.UNKNOWN

DELETED_CASES = [
    ("not ready and does not exist", F, "", dict(), True),
    ("not ready and provider returns err", F, "node0",
     dict(err_by_provider_id=RuntimeError("err!")), False),
    ("not ready but still exists", F, "node0", dict(exists_by_provider_id=True), False),
    ("unknown, node doesn't exist", U, "", dict(), True),
    ("unknown, node exists", U, "",
     dict(exists_by_provider_id=True, ext_id={"node0": "foo://12345"}), False),
    ("ready but provider says deleted", T, "node0", dict(), False),
]
DELETED_CASES += [
    ("[v2] " + name, status, pid, {**kwargs, "enable_instances_v2": True}, deleted)
    for name, status, pid, kwargs, deleted in list(DELETED_CASES)
]


@pytest.mark.parametrize(
    "status,provider_id,cloud_kwargs,expected_deleted",
    [c[1:] for c in DELETED_CASES],
    ids=[c[0] for c in DELETED_CASES],
)
def test_nodes_deleted(status, provider_id, cloud_kwargs, expected_deleted):
    node = make_node(status, provider_id)
    expected = copy.deepcopy(node)
    kube = FakeKube(node)
    make_controller(kube, FakeCloud(**cloud_kwargs)).monitor_nodes()
    if expected_deleted:
        assert "node0" not in kube.nodes
    else:
        assert kube.nodes["node0"] == expected


SHUTDOWN_CASES = [
    ("not ready, shutdown, exists", F, "node0",
     dict(node_shutdown=True, exists_by_provider_id=True), "tainted"),
    ("empty providerID, shutdown, exists", F, "",
     dict(node_shutdown=True, exists_by_provider_id=True, ext_id={"node0": "foo://12345"}),
     "tainted"),
    ("non-existing providerID gets deleted", F, "", dict(ext_id={"node0": ""}), "deleted"),
    ("error getting providerID keeps node untainted", F, "",
     dict(ext_id_err={"node0": RuntimeError("err!")}), "unchanged"),
    ("InstanceNotFound gets deleted", F, "",
     dict(ext_id_err={"node0": InstanceNotFound()}), "deleted"),
    ("error checking shutdown", F, "",
     dict(err_shutdown_by_provider_id=RuntimeError("err!")), "deleted"),
    ("not ready and not shutdown", F, "", dict(), "deleted"),
    ("ready but provider says shutdown", T, "", dict(node_shutdown=True), "unchanged"),
    ("shutdown but does not exist", U, "",
     dict(node_shutdown=True, exists_by_provider_id=False), "deleted"),
]


@pytest.mark.parametrize(
    "status,provider_id,cloud_kwargs,outcome",
    [c[1:] for c in SHUTDOWN_CASES],
    ids=[c[0] for c in SHUTDOWN_CASES],
)
def test_nodes_shutdown(status, provider_id, cloud_kwargs, outcome):
    node = make_node(status, provider_id)
    expected = copy.deepcopy(node)
    if outcome == "tainted":
        expected.taints = [SHUTDOWN_TAINT]
    kube = FakeKube(node)
    make_controller(kube, FakeCloud(**cloud_kwargs)).monitor_nodes()
    if outcome == "deleted":
        assert "node0" not in kube.nodes
    else:
        assert kube.nodes["node0"] == expected


def test_ready_node_has_shutdown_taint_removed():
    node = make_node(T, "node0")
    node.taints = [SHUTDOWN_TAINT]
    kube = FakeKube(node)
    make_controller(kube, FakeCloud(node_shutdown=True)).monitor_nodes()
    assert kube.nodes["node0"].taints == []


def test_node_without_ready_condition_is_treated_as_unknown():
    kube = FakeKube(Node(name="node0"))
    make_controller(kube, FakeCloud()).monitor_nodes()
    assert kube.nodes == {}


def test_deleting_node_records_event():
    recorder = EventRecorder()
    kube = FakeKube(make_node(F))
    make_controller(kube, FakeCloud(), recorder).monitor_nodes()
    assert [(e.event_type, e.reason) for e in recorder.events] == [
        (EVENT_TYPE_NORMAL, "DeletingNode")
    ]
    assert recorder.events[0].ref.name == "node0"


def test_failed_delete_records_warning():
    recorder = EventRecorder()
    kube = FakeKube(make_node(F), fail_delete=True)
    make_controller(kube, FakeCloud(), recorder).monitor_nodes()
    assert [(e.event_type, e.reason) for e in recorder.events] == [
        (EVENT_TYPE_NORMAL, "DeletingNode"),
        (EVENT_TYPE_WARNING, "DeletingNodeFailed"),
    ]
    assert "node0" in kube.nodes


def test_lister_failure_leaves_nodes_alone():
    kube = FakeKube(make_node(F))

    def failing_lister():
        raise RuntimeError("cache broken")

    controller = CloudNodeLifecycleController(failing_lister, kube, FakeCloud(), 1.0)
    controller.monitor_nodes()
    assert "node0" in kube.nodes


PROVIDER_ID_CASES = [
    ("initialized with provider ID", dict(), "fake://12345", "fake://12345"),
    ("initialized with provider ID v2", dict(enable_instances_v2=True), "fake://12345",
     "fake://12345"),
    ("Instances", dict(ext_id={"node0": "12345"}), "", "fake://12345"),
    ("InstancesV2", dict(enable_instances_v2=True, provider_ids={"node0": "fake://12345"}),
     "", "fake://12345"),
    ("InstancesV2 without providerID", dict(enable_instances_v2=True), "", ""),
]


@pytest.mark.parametrize(
    "cloud_kwargs,node_provider_id,expected",
    [c[1:] for c in PROVIDER_ID_CASES],
    ids=[c[0] for c in PROVIDER_ID_CASES],
)
def test_get_provider_id(cloud_kwargs, node_provider_id, expected):
    controller = make_controller(FakeKube(), FakeCloud(**cloud_kwargs))
    node = Node(name="node0", provider_id=node_provider_id)
    assert controller.get_provider_id(node) == expected


def test_get_provider_id_instance_missing():
    cloud = FakeCloud(ext_id_err={"node0": InstanceNotFound()})
    controller = make_controller(FakeKube(), cloud)
    with pytest.raises(InstanceNotFound, match="instance not found"):
        controller.get_provider_id(Node(name="node0"))


def test_get_provider_id_unknown_error():
    cloud = FakeCloud(ext_id_err={"node0": RuntimeError("unknown error")})
    controller = make_controller(FakeKube(), cloud)
    with pytest.raises(CloudProviderError) as info:
        controller.get_provider_id(Node(name="node0"))
    assert str(info.value) == "failed to get instance ID from cloud provider: unknown error"


def test_constructor_rejects_missing_client():
    with pytest.raises(ValueError, match="kubernetes client"):
        CloudNodeLifecycleController(lambda: [], None, FakeCloud(), 1.0)


def test_constructor_rejects_missing_cloud():
    with pytest.raises(ValueError, match="no cloud provider"):
        CloudNodeLifecycleController(lambda: [], FakeKube(), None, 1.0)


def test_constructor_rejects_cloud_without_instances():
    cloud = FakeCloud(supports_instances=False)
    with pytest.raises(ValueError, match="does not support instances"):
        CloudNodeLifecycleController(lambda: [], FakeKube(), cloud, 1.0)


def test_run_monitors_until_stopped():
    stop = threading.Event()
    calls = []
    kube = FakeKube(make_node(F))

    def lister():
        calls.append(1)
        if len(calls) == 2:
            stop.set()
        return kube.list_nodes()

    controller = CloudNodeLifecycleController(lister, kube, FakeCloud(), 0.01)
    controller.run(stop)
    assert len(calls) == 2
    assert "node0" not in kube.nodes