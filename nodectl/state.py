from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from typing import Any, Dict, List, Optional, Tuple
import time


class NodeStatus(str, Enum):
    INVALID = "Invalid"
    UP = "Up"
    DOWN = "Down"
    ENABLING = "Enabling"
    DISABLING = "Disabling"
    DISABLED = "Disabled"
    UNKNOWN = "Unknown"
    REMOVED = "Removed"

    @classmethod
    def parse(cls, value: Any) -> "NodeStatus":
        if isinstance(value, NodeStatus):
            return value
        for status in cls:
            if status.value == value:
                return status
        return cls.UNKNOWN


class ExpectedStatus(str, Enum):
    """Client-side hint of the status a command is expected to produce."""
    UP = "Up"
    DISABLED = "Disabled"


class HealthState(str, Enum):
    INVALID = "Invalid"
    OK = "Ok"
    WARNING = "Warning"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "HealthState":
        if isinstance(value, HealthState):
            return value
        for state in cls:
            if state.value == value:
                return state
        return cls.UNKNOWN


class HealthStateFilterFlags(IntFlag):
    DEFAULT = 0
    NONE = 1
    OK = 2
    WARNING = 4
    ERROR = 8
    ALL = 65535


class DeactivationIntent(IntEnum):
    PAUSE = 1
    RESTART = 2
    REMOVE_DATA = 3


def safe_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def format_duration(seconds: Any) -> str:
    """Render seconds as ``[<d>d ]hh:mm:ss``."""
    total = max(0, safe_int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days}d {clock}" if days else clock


# ----------------------------- snapshots -----------------------------

@dataclass(frozen=True)
class Node:
    id: str
    name: str
    status: NodeStatus
    upgrade_domain: str = ""
    fault_domain: str = ""
    up_time_seconds: int = 0
    node_type: str = ""
    ip_address: str = ""
    instance_id: str = ""
    is_stopped: bool = False
    is_seed_node: bool = False
    health_state: HealthState = HealthState.UNKNOWN
    code_version: str = ""
    config_version: str = ""

    @property
    def display_status(self) -> str:
        return "Down (Stopped)" if self.is_stopped else self.status.value

    @property
    def up_time(self) -> str:
        return format_duration(self.up_time_seconds)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "Node":
        node_id = raw.get("Id") or {}
        if isinstance(node_id, dict):
            node_id = node_id.get("Id", "")
        return cls(
            id=str(node_id),
            name=str(raw.get("Name", "")),
            status=NodeStatus.parse(raw.get("NodeStatus")),
            upgrade_domain=str(raw.get("UpgradeDomain", "")),
            fault_domain=str(raw.get("FaultDomain", "")),
            up_time_seconds=safe_int(raw.get("NodeUpTimeInSeconds")),
            node_type=str(raw.get("Type", "")),
            ip_address=str(raw.get("IpAddressOrFQDN", "")),
            instance_id=str(raw.get("InstanceId", "")),
            is_stopped=bool(raw.get("IsStopped", False)),
            is_seed_node=bool(raw.get("IsSeedNode", False)),
            health_state=HealthState.parse(raw.get("HealthState")),
            code_version=str(raw.get("CodeVersion", "")),
            config_version=str(raw.get("ConfigVersion", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "display_status": self.display_status,
            "upgrade_domain": self.upgrade_domain,
            "fault_domain": self.fault_domain,
            "up_time_seconds": self.up_time_seconds,
            "up_time": self.up_time,
            "type": self.node_type,
            "ip_address": self.ip_address,
            "instance_id": self.instance_id,
            "is_seed_node": self.is_seed_node,
            "health_state": self.health_state.value,
        }


@dataclass(frozen=True)
class LoadMetric:
    name: str
    node_load: float
    node_capacity: Optional[float] = None
    node_remaining_capacity: Optional[float] = None
    node_buffered_capacity: Optional[float] = None
    is_capacity_violation: bool = False

    @property
    def has_capacity(self) -> bool:
        from nodectl.aggregate import has_positive_capacity
        return has_positive_capacity(self.node_capacity)

    @property
    def is_system_metric(self) -> bool:
        from nodectl.aggregate import is_system_metric
        return is_system_metric(self.name)

    @property
    def load_capacity_ratio(self) -> float:
        from nodectl.aggregate import load_capacity_ratio
        return load_capacity_ratio(self.node_load, self.node_capacity)

    @property
    def load_capacity_ratio_string(self) -> str:
        from nodectl.aggregate import format_ratio
        return format_ratio(self.load_capacity_ratio)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "LoadMetric":
        capacity = raw.get("NodeCapacity")
        remaining = raw.get("NodeRemainingCapacity")
        buffered = raw.get("NodeBufferedCapacity")
        return cls(
            name=str(raw.get("Name", "")),
            node_load=safe_float(raw.get("NodeLoad")),
            node_capacity=safe_float(capacity) if capacity is not None else None,
            node_remaining_capacity=safe_float(remaining) if remaining is not None else None,
            node_buffered_capacity=safe_float(buffered) if buffered is not None else None,
            is_capacity_violation=bool(raw.get("IsCapacityViolation", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "node_load": self.node_load,
            "node_capacity": self.node_capacity,
            "load_capacity_ratio": self.load_capacity_ratio,
            "load_capacity_ratio_string": self.load_capacity_ratio_string,
            "is_system_metric": self.is_system_metric,
            "is_capacity_violation": self.is_capacity_violation,
        }


@dataclass(frozen=True)
class LoadInformation:
    node_name: str
    metrics: Tuple[LoadMetric, ...] = ()

    def __post_init__(self) -> None:
        seen = set()
        for metric in self.metrics:
            if metric.name in seen:
                raise ValueError(f"Duplicate load metric '{metric.name}' for node '{self.node_name}'")
            seen.add(metric.name)

    def get(self, name: str) -> Optional[LoadMetric]:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "LoadInformation":
        entries = raw.get("NodeLoadMetricInformation")
        if entries is None and isinstance(raw.get("LoadMetrics"), list):
            entries = raw["LoadMetrics"]
        return cls(
            node_name=str(raw.get("NodeName", "")),
            metrics=tuple(LoadMetric.from_raw(e) for e in (entries or [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"node_name": self.node_name, "metrics": [m.to_dict() for m in self.metrics]}


@dataclass(frozen=True)
class HealthEvent:
    source_id: str
    property: str
    health_state: HealthState
    description: str = ""
    sent_at: str = ""
    ttl: str = ""
    is_expired: bool = False

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "HealthEvent":
        return cls(
            source_id=str(raw.get("SourceId", "")),
            property=str(raw.get("Property", "")),
            health_state=HealthState.parse(raw.get("HealthState")),
            description=str(raw.get("Description", "")),
            sent_at=str(raw.get("SourceUtcTimestamp") or raw.get("SentAt") or ""),
            ttl=str(raw.get("TimeToLiveInMilliSeconds", "")),
            is_expired=bool(raw.get("IsExpired", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "property": self.property,
            "health_state": self.health_state.value,
            "description": self.description,
            "is_expired": self.is_expired,
        }


@dataclass(frozen=True)
class Health:
    aggregated_health_state: HealthState
    events: Tuple[HealthEvent, ...] = ()
    unhealthy_evaluations: Tuple[str, ...] = ()
    events_filter: HealthStateFilterFlags = HealthStateFilterFlags.DEFAULT

    @classmethod
    def from_raw(
        cls,
        raw: Dict[str, Any],
        events_filter: HealthStateFilterFlags = HealthStateFilterFlags.DEFAULT,
    ) -> "Health":
        evaluations: List[str] = []
        for wrapper in raw.get("UnhealthyEvaluations") or []:
            evaluation = wrapper.get("HealthEvaluation", wrapper) if isinstance(wrapper, dict) else {}
            description = evaluation.get("Description")
            if description:
                evaluations.append(str(description))
        return cls(
            aggregated_health_state=HealthState.parse(raw.get("AggregatedHealthState")),
            events=tuple(HealthEvent.from_raw(e) for e in (raw.get("HealthEvents") or [])),
            unhealthy_evaluations=tuple(evaluations),
            events_filter=events_filter,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggregated_health_state": self.aggregated_health_state.value,
            "events": [e.to_dict() for e in self.events],
            "unhealthy_evaluations": list(self.unhealthy_evaluations),
        }


@dataclass(frozen=True)
class NodeSnapshot:
    """Result of one poll. Replaces the previous snapshot wholesale."""
    node: Node
    load: Optional[LoadInformation] = None
    health: Optional[Health] = None
    fetched_at: float = field(default_factory=time.time)
    load_error: Optional[Exception] = None
    health_error: Optional[Exception] = None

    @property
    def complete(self) -> bool:
        return self.load_error is None and self.health_error is None
