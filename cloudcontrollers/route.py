"""Controller that keeps cloud routing rules in step with the nodes' pod CIDRs.

The controller works against duck-typed collaborators:

* ``routes`` offers ``list_routes(cluster_name)``,
  ``create_route(cluster_name, name_hint, route)`` and
  ``delete_route(cluster_name, route)``.
* ``kube_client`` offers ``set_node_condition(node_name, condition)``, which
  may raise :class:`ConflictError` to ask for a retry.
* ``node_lister()`` returns an iterable of :class:`Node`.
"""

from __future__ import annotations

import ipaddress
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Sequence

from .model import (
    EVENT_TYPE_WARNING,
    NODE_NETWORK_UNAVAILABLE,
    CloudProviderError,
    ConditionStatus,
    ConflictError,
    EventRecorder,
    Node,
    NodeAddress,
    NodeCondition,
    ObjectReference,
    Route,
    get_node_condition,
)

log = logging.getLogger(__name__)

MAX_CONCURRENT_ROUTE_OPERATIONS = 200

_RETRY_STEPS = 5
_RETRY_DURATION = 0.1
_RETRY_JITTER = 1.0

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class RouteAction(str, Enum):
    """What to do with the route for one pod CIDR of a node."""

    KEEP = "keep"
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


@dataclass
class _RouteNode:
    name: str
    addrs: list[NodeAddress] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    actions: dict[str, RouteAction] = field(default_factory=dict)


def _parse_cidr(cidr: str) -> IPNetwork:
    """Parse a CIDR, tolerating leading zeros in IPv4 octets."""
    address, sep, prefix = cidr.partition("/")
    if not sep:
        raise ValueError(f"invalid CIDR address: {cidr}")
    if ":" not in address and address.count(".") == 3:
        address = ".".join(str(int(octet, 10)) for octet in address.split("."))
    return ipaddress.ip_network(f"{address}/{prefix}", strict=False)


def _retry_on_conflict(operation: Callable[[], None]) -> None:
    """Run ``operation``, retrying with jittered backoff while it raises ConflictError."""
    for attempt in range(_RETRY_STEPS):
        try:
            operation()
            return
        except ConflictError:
            if attempt == _RETRY_STEPS - 1:
                raise
        time.sleep(_RETRY_DURATION * (1 + random.random() * _RETRY_JITTER))


def equal_node_addrs(addrs0: Sequence[NodeAddress], addrs1: Sequence[NodeAddress]) -> bool:
    """Return True if both address lists have the same length and every address of the first is in the second."""
    if len(addrs0) != len(addrs1):
        return False
    return all(addr in addrs1 for addr in addrs0)


def get_route_action(
    routes: Iterable[Route],
    cidr: str,
    node_name: str,
    real_node_addrs: Sequence[NodeAddress],
) -> RouteAction:
    """Decide the action for ``cidr`` given the node's existing routes and current addresses."""
    for route in routes:
        if route.destination_cidr != cidr:
            continue
        if not route.enable_node_addresses or equal_node_addrs(
            real_node_addrs, route.target_node_addresses
        ):
            return RouteAction.KEEP
        log.info(
            "Node addresses have changed from %s to %s",
            route.target_node_addresses,
            real_node_addrs,
        )
        return RouteAction.UPDATE
    return RouteAction.ADD


class RouteController:
    """Creates and deletes cloud routes so each node's pod CIDRs route to it."""

    def __init__(
        self,
        routes,
        kube_client,
        node_lister,
        cluster_name: str,
        cluster_cidrs,
        recorder: EventRecorder | None = None,
    ) -> None:
        if not cluster_cidrs:
            raise ValueError("RouteController: Must specify clusterCIDR.")
        self._routes = routes
        self._kube_client = kube_client
        self._node_lister = node_lister
        self.cluster_name = cluster_name
        self.cluster_cidrs: list[IPNetwork] = [
            _parse_cidr(c) if isinstance(c, str) else c for c in cluster_cidrs
        ]
        self.recorder = recorder if recorder is not None else EventRecorder("route_controller")

    def run(self, sync_period: float, stop_event: threading.Event) -> None:
        """Reconcile routes every ``sync_period`` seconds until ``stop_event`` is set; blocks."""
        log.info("Starting route controller")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.reconcile_node_routes()
            except Exception as exc:
                log.error("Couldn't reconcile node routes: %s", exc)
            stop_event.wait(max(0.0, sync_period - (time.monotonic() - started)))
        log.info("Shutting down route controller")

    def reconcile_node_routes(self) -> None:
        """List routes and nodes, then reconcile them."""
        try:
            route_list = list(self._routes.list_routes(self.cluster_name))
        except Exception as exc:
            raise CloudProviderError(f"error listing routes: {exc}") from exc
        try:
            nodes = list(self._node_lister())
        except Exception as exc:
            raise RuntimeError(f"error listing nodes: {exc}") from exc
        self.reconcile(nodes, route_list)

    def reconcile(self, nodes: Sequence[Node], routes: Sequence[Route]) -> None:
        """Delete stale routes, create missing ones and update node network conditions."""
        lock = threading.Lock()
        route_map: dict[str, _RouteNode] = {}

        for route in routes:
            if not route.target_node:
                continue
            route_map.setdefault(route.target_node, _RouteNode(route.target_node)).routes.append(
                route
            )

        for node in nodes:
            if not node.pod_cidrs:
                continue
            entry = route_map.setdefault(node.name, _RouteNode(node.name))
            entry.addrs = list(node.addresses)
            for pod_cidr in node.pod_cidrs:
                action = get_route_action(entry.routes, pod_cidr, node.name, node.addresses)
                entry.actions[pod_cidr] = action
                log.info("action for Node %r with CIDR %r: %r", node.name, pod_cidr, action.value)

        def should_delete(node_name: str, cidr: str) -> bool:
            with lock:
                entry = route_map.get(node_name)
                if entry is None:
                    return True
                action = entry.actions.get(cidr)
            if action is None or action in (RouteAction.REMOVE, RouteAction.UPDATE):
                log.info(
                    "route should be deleted, spec: exist: %s, action: %r, Node %r, CIDR %r",
                    action is not None,
                    action.value if action else "",
                    node_name,
                    cidr,
                )
                return True
            return False

        with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_ROUTE_OPERATIONS) as pool:
            pending: list[Future] = [
                pool.submit(self._delete_route, route)
                for route in routes
                if self.is_responsible_for_route(route)
                and (route.blackhole or should_delete(route.target_node, route.destination_cidr))
            ]
            # With node addresses in play an update deletes and re-adds the same
            # route, so deletions must finish before creations start.
            if routes and routes[0].enable_node_addresses:
                wait(pending)

            for node in nodes:
                if not node.pod_cidrs:
                    continue
                for pod_cidr in node.pod_cidrs:
                    with lock:
                        action = route_map[node.name].actions.get(pod_cidr)
                    if action in (RouteAction.KEEP, RouteAction.REMOVE):
                        continue
                    route = Route(
                        target_node=node.name,
                        target_node_addresses=list(node.addresses),
                        destination_cidr=pod_cidr,
                    )
                    log.info("route spec to be created: %s", route)
                    pending.append(
                        pool.submit(self._create_route, node.name, node.uid, route, route_map, lock)
                    )
            wait(pending)

            updates = []
            for node in nodes:
                entry = route_map.get(node.name)
                if entry is None:
                    continue
                if not entry.actions:
                    log.info(
                        "node %s has no routes assigned to it. "
                        "NodeNetworkUnavailable will be set to true",
                        node.name,
                    )
                    all_created = False
                else:
                    all_created = not any(
                        a in (RouteAction.ADD, RouteAction.UPDATE) for a in entry.actions.values()
                    )
                updates.append(pool.submit(self._update_condition_logged, node, all_created))
            wait(updates)

    def _delete_route(self, route: Route) -> None:
        started = time.monotonic()
        log.info("Deleting route %s %s", route.name, route.destination_cidr)
        try:
            self._routes.delete_route(self.cluster_name, route)
        except Exception as exc:
            log.error(
                "Could not delete route %s %s after %.3fs: %s",
                route.name,
                route.destination_cidr,
                time.monotonic() - started,
                exc,
            )
        else:
            log.info(
                "Deleted route %s %s after %.3fs",
                route.name,
                route.destination_cidr,
                time.monotonic() - started,
            )

    def _create_route(
        self,
        node_name: str,
        name_hint: str,
        route: Route,
        route_map: dict[str, _RouteNode],
        lock: threading.Lock,
    ) -> None:
        def attempt() -> None:
            started = time.monotonic()
            log.info(
                "Creating route for node %s %s with hint %s",
                node_name,
                route.destination_cidr,
                name_hint,
            )
            try:
                self._routes.create_route(self.cluster_name, name_hint, route)
            except Exception as exc:
                msg = (
                    f"Could not create route {name_hint} {route.destination_cidr} for node "
                    f"{node_name} after {time.monotonic() - started:.3f}s: {exc}"
                )
                self.recorder.record(
                    ObjectReference(kind="Node", name=node_name, uid=node_name, namespace=""),
                    EVENT_TYPE_WARNING,
                    "FailedToCreateRoute",
                    msg,
                )
                log.debug(msg)
                raise
            with lock:
                route_map[node_name].actions[route.destination_cidr] = RouteAction.KEEP
            log.info(
                "Created route for node %s %s with hint %s after %.3fs",
                node_name,
                route.destination_cidr,
                name_hint,
                time.monotonic() - started,
            )

        try:
            _retry_on_conflict(attempt)
        except Exception as exc:
            log.error(
                "Could not create route %s %s for node %s: %s",
                name_hint,
                route.destination_cidr,
                node_name,
                exc,
            )

    def _update_condition_logged(self, node: Node, routes_created: bool) -> None:
        try:
            self.update_networking_condition(node, routes_created)
        except Exception as exc:
            log.error("failed to update networking condition: %s", exc)

    def update_networking_condition(self, node: Node, routes_created: bool) -> None:
        """Set the node's NetworkUnavailable condition unless it already has the wanted value."""
        condition = get_node_condition(node, NODE_NETWORK_UNAVAILABLE)
        if condition is not None:
            if routes_created and condition.status == ConditionStatus.FALSE:
                log.debug(
                    "set node %s with NodeNetworkUnavailable=false was canceled "
                    "because it is already set",
                    node.name,
                )
                return
            if not routes_created and condition.status == ConditionStatus.TRUE:
                log.debug(
                    "set node %s with NodeNetworkUnavailable=true was canceled "
                    "because it is already set",
                    node.name,
                )
                return

        log.info(
            "Patching node status %s with %s previous condition was:%s",
            node.name,
            routes_created,
            condition,
        )

        def attempt() -> None:
            now = datetime.now(timezone.utc)
            if routes_created:
                new_condition = NodeCondition(
                    type=NODE_NETWORK_UNAVAILABLE,
                    status=ConditionStatus.FALSE,
                    reason="RouteCreated",
                    message="RouteController created a route",
                    last_transition_time=now,
                )
            else:
                new_condition = NodeCondition(
                    type=NODE_NETWORK_UNAVAILABLE,
                    status=ConditionStatus.TRUE,
                    reason="NoRouteCreated",
                    message="RouteController failed to create a route",
                    last_transition_time=now,
                )
            try:
                self._kube_client.set_node_condition(node.name, new_condition)
            except Exception as exc:
                log.debug("Error updating node %s, retrying: %s", node.name, exc)
                raise

        try:
            _retry_on_conflict(attempt)
        except Exception as exc:
            log.error("Error updating node %s: %s", node.name, exc)
            raise

    def is_responsible_for_route(self, route: Route) -> bool:
        """Return True if the route's CIDR overlaps one of the cluster CIDRs at its first or last address."""
        try:
            cidr = _parse_cidr(route.destination_cidr)
        except ValueError as exc:
            log.error("Ignoring route %s, unparsable CIDR: %s", route.name, exc)
            return False
        first, last = cidr.network_address, cidr.broadcast_address
        return any(first in net or last in net for net in self.cluster_cidrs)