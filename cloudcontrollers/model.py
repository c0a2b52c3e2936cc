"""Cluster objects, cloud-provider errors and event recording shared by the controllers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

NODE_READY = "Ready"
NODE_NETWORK_UNAVAILABLE = "NetworkUnavailable"

NODE_INTERNAL_IP = "InternalIP"
NODE_EXTERNAL_IP = "ExternalIP"
NODE_HOSTNAME = "Hostname"

TAINT_NODE_SHUTDOWN = "node.cloudprovider.kubernetes.io/shutdown"
TAINT_EFFECT_NO_SCHEDULE = "NoSchedule"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class ConditionStatus(str, Enum):
    """Status value of a node condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class NodeAddress:
    """One address reported for a node."""

    type: str
    address: str


@dataclass(frozen=True)
class Taint:
    """A taint applied to a node."""

    key: str
    effect: str
    value: str = ""


@dataclass
class NodeCondition:
    """A condition in a node's status."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_heartbeat_time: datetime | None = None
    last_transition_time: datetime | None = None


@dataclass
class Node:
    """A cluster node with the parts of its spec and status the controllers use."""

    name: str
    uid: str = ""
    provider_id: str = ""
    pod_cidrs: list[str] = field(default_factory=list)
    taints: list[Taint] = field(default_factory=list)
    conditions: list[NodeCondition] = field(default_factory=list)
    addresses: list[NodeAddress] = field(default_factory=list)
    creation_timestamp: datetime | None = None


@dataclass
class Route:
    """A route in the cloud provider's routing table."""

    name: str = ""
    target_node: str = ""
    target_node_addresses: list[NodeAddress] = field(default_factory=list)
    destination_cidr: str = ""
    blackhole: bool = False
    enable_node_addresses: bool = False


@dataclass(frozen=True)
class ObjectReference:
    """Reference to the object an event is about."""

    kind: str
    name: str
    uid: str = ""
    namespace: str = ""


@dataclass(frozen=True)
class Event:
    """A recorded event."""

    ref: ObjectReference
    event_type: str
    reason: str
    message: str


class EventRecorder:
    """Collects events emitted by a controller; safe to use from several threads."""

    def __init__(self, component: str = "") -> None:
        self.component = component
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def record(self, ref: ObjectReference, event_type: str, reason: str, message: str) -> Event:
        """Store an event and return it."""
        event = Event(ref=ref, event_type=event_type, reason=reason, message=message)
        with self._lock:
            self._events.append(event)
        return event

    @property
    def events(self) -> tuple[Event, ...]:
        """Events recorded so far, oldest first."""
        with self._lock:
            return tuple(self._events)


class CloudProviderError(Exception):
    """Raised when a cloud provider call fails."""


class InstanceNotFound(CloudProviderError):
    """The cloud provider has no instance for the node."""

    def __init__(self, message: str = "instance not found") -> None:
        super().__init__(message)


class ProviderNotImplemented(CloudProviderError):
    """The cloud provider does not implement the requested call."""

    def __init__(self, message: str = "unimplemented") -> None:
        super().__init__(message)


class ConflictError(Exception):
    """An update conflicted with a concurrent change and may be retried."""


def get_node_condition(node: Node, condition_type: str) -> NodeCondition | None:
    """Return the node's first condition of the given type, or None."""
    return next((c for c in node.conditions if c.type == condition_type), None)