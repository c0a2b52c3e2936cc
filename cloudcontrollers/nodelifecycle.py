"""Controller that removes nodes gone from the cloud and taints nodes that are shut down.

The controller works against duck-typed collaborators:

* ``node_lister()`` returns an iterable of :class:`Node`.
* ``kube_client`` offers ``delete_node(name)``,
  ``add_or_update_taint(name, taint)`` and ``remove_taint(name, node, taint)``.
* ``cloud`` offers ``instances()`` and ``instances_v2()``, each returning an
  implementation or ``None``, and ``provider_name()``.  An ``instances``
  implementation offers ``instance_id(node_name)``,
  ``instance_exists_by_provider_id(provider_id)`` and
  ``instance_shutdown_by_provider_id(provider_id)``; an ``instances_v2`` one
  offers ``instance_exists(node)``, ``instance_shutdown(node)`` and
  ``instance_metadata(node)`` whose result has a ``provider_id``.
"""

from __future__ import annotations

import logging
import threading

from .model import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    NODE_READY,
    TAINT_EFFECT_NO_SCHEDULE,
    TAINT_NODE_SHUTDOWN,
    CloudProviderError,
    ConditionStatus,
    EventRecorder,
    InstanceNotFound,
    Node,
    ObjectReference,
    ProviderNotImplemented,
    Taint,
    get_node_condition,
)

log = logging.getLogger(__name__)

DELETE_NODE_EVENT = "DeletingNode"
DELETE_NODE_FAILED_EVENT = "DeletingNodeFailed"

SHUTDOWN_TAINT = Taint(key=TAINT_NODE_SHUTDOWN, effect=TAINT_EFFECT_NO_SCHEDULE)


def _instance_provider_id(cloud, node_name: str) -> str:
    instances = cloud.instances()
    if instances is None:
        raise CloudProviderError("failed to get instances from cloud provider")
    try:
        instance_id = instances.instance_id(node_name)
    except (ProviderNotImplemented, InstanceNotFound):
        raise
    except Exception as exc:
        raise CloudProviderError(
            f"failed to get instance ID from cloud provider: {exc}"
        ) from exc
    return f"{cloud.provider_name()}://{instance_id}"


class CloudNodeLifecycleController:
    """Deletes nodes missing from the cloud provider and taints shut-down nodes."""

    def __init__(self, node_lister, kube_client, cloud, node_monitor_period=5.0, recorder=None):
        if kube_client is None:
            raise ValueError("kubernetes client is required")
        if cloud is None:
            raise ValueError("no cloud provider provided")
        if cloud.instances() is None and cloud.instances_v2() is None:
            raise ValueError("cloud provider does not support instances")
        self._node_lister = node_lister
        self._kube_client = kube_client
        self._cloud = cloud
        self.node_monitor_period = node_monitor_period
        self.recorder = recorder if recorder is not None else EventRecorder(
            "cloud-node-lifecycle-controller"
        )

    def run(self, stop_event: threading.Event) -> None:
        """Monitor nodes every period until ``stop_event`` is set; blocks."""
        log.info("Starting cloud node lifecycle controller")
        while not stop_event.is_set():
            self.monitor_nodes()
            stop_event.wait(self.node_monitor_period)
        log.info("Shutting down cloud node lifecycle controller")

    def monitor_nodes(self) -> None:
        """Delete nodes that no longer exist in the cloud and taint shut-down ones."""
        try:
            nodes = list(self._node_lister())
        except Exception as exc:
            log.error("error listing nodes from cache: %s", exc)
            return

        for node in nodes:
            condition = get_node_condition(node, NODE_READY)
            status = condition.status if condition is not None else ConditionStatus.UNKNOWN

            if status == ConditionStatus.TRUE:
                try:
                    self._kube_client.remove_taint(node.name, node, SHUTDOWN_TAINT)
                except Exception as exc:
                    log.error("error patching node taints: %s", exc)
                continue

            try:
                exists = self.ensure_node_exists_by_provider_id(node)
            except Exception as exc:
                log.error("error checking if node %s exists: %s", node.name, exc)
                continue

            if not exists:
                self._delete_node(node)
                continue

            try:
                shutdown = self.shutdown_in_cloud_provider(node)
            except Exception as exc:
                log.error("error checking if node %s is shutdown: %s", node.name, exc)
                continue
            if shutdown:
                try:
                    self._kube_client.add_or_update_taint(node.name, SHUTDOWN_TAINT)
                except Exception:
                    log.error(
                        "failed to apply shutdown taint to node %s, it may have been deleted.",
                        node.name,
                    )

    def _delete_node(self, node: Node) -> None:
        log.info("deleting node since it is no longer present in cloud provider: %s", node.name)
        ref = ObjectReference(kind="Node", name=node.name, uid=node.uid, namespace="")
        self.recorder.record(
            ref,
            EVENT_TYPE_NORMAL,
            DELETE_NODE_EVENT,
            f"Deleting node {node.name} because it does not exist in the cloud provider",
        )
        try:
            self._kube_client.delete_node(node.name)
        except Exception as exc:
            log.error("unable to delete node %r: %s", node.name, exc)
            self.recorder.record(
                ref,
                EVENT_TYPE_WARNING,
                DELETE_NODE_FAILED_EVENT,
                f"Failed deleting node {node.name}: {exc}",
            )

    def get_provider_id(self, node: Node) -> str:
        """Return the node's provider ID, asking the cloud provider if the node has none."""
        if node.provider_id:
            return node.provider_id
        instances_v2 = self._cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_metadata(node).provider_id
        return _instance_provider_id(self._cloud, node.name)

    def shutdown_in_cloud_provider(self, node: Node) -> bool:
        """Return True if the cloud provider reports the node's instance as shut down."""
        instances_v2 = self._cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_shutdown(node)

        instances = self._cloud.instances()
        if instances is None:
            raise CloudProviderError("cloud provider does not support instances")

        try:
            provider_id = self.get_provider_id(node)
        except InstanceNotFound:
            return False

        try:
            return instances.instance_shutdown_by_provider_id(provider_id)
        except ProviderNotImplemented:
            return False

    def ensure_node_exists_by_provider_id(self, node: Node) -> bool:
        """Return True if the node's instance still exists in the cloud provider."""
        instances_v2 = self._cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_exists(node)

        instances = self._cloud.instances()
        if instances is None:
            raise CloudProviderError("instances interface not supported in the cloud provider")

        try:
            provider_id = self.get_provider_id(node)
        except InstanceNotFound:
            return False

        return instances.instance_exists_by_provider_id(provider_id)