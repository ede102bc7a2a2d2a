"""Action gate: which lifecycle commands a node currently accepts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from nodectl.state import DeactivationIntent, ExpectedStatus, NodeStatus

ACTIVATE = "activate"
DEACTIVATE_PAUSE = "deactivate_pause"
DEACTIVATE_RESTART = "deactivate_restart"
DEACTIVATE_REMOVE_DATA = "deactivate_remove_data"
REMOVE_NODE_STATE = "remove_node_state"
RESTART = "restart"

Predicate = Callable[[NodeStatus], bool]


def can_activate(status: NodeStatus) -> bool:
    return status in (NodeStatus.DOWN, NodeStatus.DISABLING, NodeStatus.DISABLED)


def can_deactivate(status: NodeStatus) -> bool:
    # Deactivating an already disabled node at a higher intent is allowed.
    return status != NodeStatus.DOWN


def can_remove_node_state(status: NodeStatus) -> bool:
    return status == NodeStatus.DOWN


def can_restart(status: NodeStatus) -> bool:
    return True


@dataclass(frozen=True)
class Command:
    """A lifecycle command, decoupled from how it is presented.

    ``execute`` is bound by the dispatcher; the gate only reads ``precondition``.
    """
    name: str
    label: str
    precondition: Predicate
    expected_on_success: Optional[ExpectedStatus] = None
    intent: Optional[DeactivationIntent] = None
    requires_confirmation: bool = True
    advanced: bool = True
    execute: Optional[Callable[[], None]] = None


COMMANDS: Dict[str, Command] = {
    ACTIVATE: Command(
        ACTIVATE, "Activate", can_activate,
        expected_on_success=ExpectedStatus.UP, requires_confirmation=False,
    ),
    DEACTIVATE_PAUSE: Command(
        DEACTIVATE_PAUSE, "Deactivate (pause)", can_deactivate,
        expected_on_success=ExpectedStatus.DISABLED, intent=DeactivationIntent.PAUSE,
    ),
    DEACTIVATE_RESTART: Command(
        DEACTIVATE_RESTART, "Deactivate (restart)", can_deactivate,
        expected_on_success=ExpectedStatus.DISABLED, intent=DeactivationIntent.RESTART,
    ),
    DEACTIVATE_REMOVE_DATA: Command(
        DEACTIVATE_REMOVE_DATA, "Deactivate (remove data)", can_deactivate,
        expected_on_success=ExpectedStatus.DISABLED, intent=DeactivationIntent.REMOVE_DATA,
    ),
    REMOVE_NODE_STATE: Command(REMOVE_NODE_STATE, "Remove node state", can_remove_node_state),
    RESTART: Command(RESTART, "Restart", can_restart, advanced=False),
}

DEACTIVATE_COMMANDS = {
    DeactivationIntent.PAUSE: DEACTIVATE_PAUSE,
    DeactivationIntent.RESTART: DEACTIVATE_RESTART,
    DeactivationIntent.REMOVE_DATA: DEACTIVATE_REMOVE_DATA,
}


def effective_status(status: NodeStatus, expected: Optional[ExpectedStatus]) -> NodeStatus:
    """The hint, when present, stands in for the last polled status."""
    if expected is not None:
        return NodeStatus(ExpectedStatus(expected).value)
    return status


def enabled_commands(
    status: NodeStatus,
    expected: Optional[ExpectedStatus] = None,
    commands: Optional[Iterable[Command]] = None,
) -> FrozenSet[str]:
    if commands is None:
        commands = COMMANDS.values()
    current = effective_status(status, expected)
    return frozenset(c.name for c in commands if c.precondition(current))


def available_commands(actions_enabled: bool = True, advanced_actions_enabled: bool = True) -> Dict[str, Command]:
    """Commands switched on by configuration."""
    out: Dict[str, Command] = {}
    for name, command in COMMANDS.items():
        if command.advanced and advanced_actions_enabled:
            out[name] = command
        elif not command.advanced and actions_enabled:
            out[name] = command
    return out
