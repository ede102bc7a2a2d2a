"""Load and health aggregation over raw snapshot values."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from nodectl.state import (
    Health,
    HealthEvent,
    HealthState,
    HealthStateFilterFlags,
    LoadInformation,
)

SYSTEM_METRIC_DELIMITER = "__"

# Worst wins when rolling up.
_SEVERITY = {
    HealthState.INVALID: 0,
    HealthState.OK: 1,
    HealthState.UNKNOWN: 2,
    HealthState.WARNING: 3,
    HealthState.ERROR: 4,
}

_STATE_FLAGS = {
    HealthState.OK: HealthStateFilterFlags.OK,
    HealthState.WARNING: HealthStateFilterFlags.WARNING,
    HealthState.ERROR: HealthStateFilterFlags.ERROR,
}


def has_positive_capacity(node_capacity: Optional[float]) -> bool:
    return node_capacity is not None and math.isfinite(node_capacity) and node_capacity > 0


def load_capacity_ratio(node_load: float, node_capacity: Optional[float]) -> float:
    """Return load/capacity, or 0.0 when the metric has no positive finite capacity."""
    if not has_positive_capacity(node_capacity):
        return 0.0
    ratio = float(node_load) / float(node_capacity)
    return ratio if math.isfinite(ratio) else 0.0


def format_ratio(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def is_system_metric(name: str) -> bool:
    """Platform-reserved metrics are named ``__name__``."""
    if not name or len(name) < 2 * len(SYSTEM_METRIC_DELIMITER):
        return False
    return name.startswith(SYSTEM_METRIC_DELIMITER) and name.endswith(SYSTEM_METRIC_DELIMITER)


@dataclass
class LoadSummary:
    metric_count: int = 0
    system_metric_count: int = 0
    user_metric_count: int = 0
    capacitated_count: int = 0
    max_ratio: float = 0.0
    hottest_metric: Optional[str] = None
    violations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "metric_count": self.metric_count,
            "system_metric_count": self.system_metric_count,
            "user_metric_count": self.user_metric_count,
            "capacitated_count": self.capacitated_count,
            "max_ratio": self.max_ratio,
            "max_ratio_string": format_ratio(self.max_ratio),
            "hottest_metric": self.hottest_metric,
            "violations": list(self.violations),
        }


def summarize_load(load: Optional[LoadInformation], include_system: bool = True) -> LoadSummary:
    """Roll a node's load metrics up into counts and the hottest metric.

    Args:
        load: Load snapshot (None yields an empty summary)
        include_system: Whether system metrics compete for hottest metric

    Returns:
        LoadSummary
    """
    summary = LoadSummary()
    if load is None:
        return summary

    for metric in load.metrics:
        summary.metric_count += 1
        system = is_system_metric(metric.name)
        if system:
            summary.system_metric_count += 1
        else:
            summary.user_metric_count += 1

        if metric.is_capacity_violation:
            summary.violations.append(metric.name)

        if not metric.has_capacity:
            continue
        summary.capacitated_count += 1
        if system and not include_system:
            continue
        ratio = load_capacity_ratio(metric.node_load, metric.node_capacity)
        if summary.hottest_metric is None or ratio > summary.max_ratio:
            summary.max_ratio = ratio
            summary.hottest_metric = metric.name

    return summary


def worst_state(states: Iterable[HealthState]) -> HealthState:
    worst = HealthState.INVALID
    for state in states:
        if _SEVERITY.get(state, 0) > _SEVERITY[worst]:
            worst = state
    return worst


def filter_events(events: Iterable[HealthEvent], flags: HealthStateFilterFlags) -> List[HealthEvent]:
    """Apply an events filter client-side.

    DEFAULT and ALL keep everything, NONE keeps nothing.
    """
    flags = HealthStateFilterFlags(flags)
    if flags == HealthStateFilterFlags.DEFAULT or flags == HealthStateFilterFlags.ALL:
        return list(events)
    if flags == HealthStateFilterFlags.NONE:
        return []
    return [e for e in events if _STATE_FLAGS.get(e.health_state, 0) & flags]


@dataclass
class HealthRollup:
    state: HealthState = HealthState.INVALID
    counts: Dict[str, int] = field(default_factory=dict)
    expired: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"state": self.state.value, "counts": dict(self.counts), "expired": self.expired}


def rollup_health(health: Optional[Health]) -> HealthRollup:
    """Worst state over the aggregated state and all live events."""
    rollup = HealthRollup()
    if health is None:
        return rollup

    states = [health.aggregated_health_state]
    for event in health.events:
        if event.is_expired:
            rollup.expired += 1
            continue
        states.append(event.health_state)
        key = event.health_state.value
        rollup.counts[key] = rollup.counts.get(key, 0) + 1

    rollup.state = worst_state(states)
    return rollup
