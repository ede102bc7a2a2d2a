"""Lifecycle command dispatcher."""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Dict, List, Optional, Union

from nodectl import gate
from nodectl.client import ControllerClient
from nodectl.errors import PreconditionFailed
from nodectl.expected import ExpectedStateTracker
from nodectl.gate import Command
from nodectl.state import DeactivationIntent, ExpectedStatus, Node

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Issues lifecycle commands against the controller for polled nodes."""

    def __init__(
        self,
        client: ControllerClient,
        tracker: ExpectedStateTracker,
        commands: Optional[Dict[str, Command]] = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            client: Controller REST client
            tracker: Expected-status store updated after acknowledged commands
            commands: Commands this dispatcher may issue (defaults to all)
        """
        self.client = client
        self.tracker = tracker
        self.commands = dict(gate.COMMANDS if commands is None else commands)

    def enabled_for(self, node: Node, expected: Optional[ExpectedStatus]) -> List[str]:
        """Names of commands the gate allows for ``node`` under hint ``expected``."""
        enabled = gate.enabled_commands(node.status, expected, self.commands.values())
        return [name for name in self.commands if name in enabled]

    def commands_for(self, node: Node, guard: Optional[Callable[[], bool]] = None) -> Dict[str, Command]:
        """Commands keyed by name, each with ``execute`` bound to ``node``."""
        return {
            name: dataclasses.replace(command, execute=self._bind(name, node, guard))
            for name, command in self.commands.items()
        }

    def dispatch(
        self,
        command: Union[str, Command],
        node: Node,
        guard: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Gate-check and issue one command.

        Args:
            command: Command or its name
            node: Last polled snapshot of the target node
            guard: Checked before recording the expected status; False means the
                node stopped being tracked while the call was in flight

        Raises:
            PreconditionFailed: Unknown/disabled command or gate rejected it
            NetworkFailure, NotFound, AuthFailure, ServerRejected: from the controller
        """
        name = command.name if isinstance(command, Command) else command
        resolved = self.commands.get(name)
        if resolved is None:
            raise PreconditionFailed(f"Command '{name}' is not available", command=name)

        expected = self.tracker.get_expected(node.name)
        effective = gate.effective_status(node.status, expected)
        if not resolved.precondition(effective):
            raise PreconditionFailed(
                f"{resolved.label} is not allowed while node '{node.name}' is {effective.value}",
                command=name,
                status=effective.value,
                context={"node": node.name},
            )

        logger.info(f"Issuing {name} on node {node.name} (status={node.status.value}, expected={expected.value if expected else None})")
        self._issue(resolved, node)

        if resolved.expected_on_success is None:
            return
        if guard is not None and not guard():
            logger.debug(f"Node {node.name} no longer tracked, dropping expected status from {name}")
            return
        self.tracker.set_expected(node.name, resolved.expected_on_success)

    def activate(self, node: Node, guard: Optional[Callable[[], bool]] = None) -> None:
        self.dispatch(gate.ACTIVATE, node, guard)

    def deactivate(
        self,
        node: Node,
        intent: Union[int, DeactivationIntent],
        guard: Optional[Callable[[], bool]] = None,
    ) -> None:
        try:
            intent = DeactivationIntent(intent)
        except ValueError as e:
            raise PreconditionFailed(f"Unknown deactivation intent {intent!r}", command="deactivate") from e
        self.dispatch(gate.DEACTIVATE_COMMANDS[intent], node, guard)

    def remove_node_state(self, node: Node, guard: Optional[Callable[[], bool]] = None) -> None:
        self.dispatch(gate.REMOVE_NODE_STATE, node, guard)

    def restart(self, node: Node, guard: Optional[Callable[[], bool]] = None) -> None:
        self.dispatch(gate.RESTART, node, guard)

    def _bind(self, name: str, node: Node, guard: Optional[Callable[[], bool]]) -> Callable[[], None]:
        def execute() -> None:
            self.dispatch(name, node, guard)
        return execute

    def _issue(self, command: Command, node: Node) -> None:
        if command.intent is not None:
            self.client.deactivate_node(node.name, command.intent)
        elif command.name == gate.ACTIVATE:
            self.client.activate_node(node.name)
        elif command.name == gate.REMOVE_NODE_STATE:
            self.client.remove_node_state(node.name)
        elif command.name == gate.RESTART:
            self.client.restart_node(node.name, node.instance_id)
        else:
            raise PreconditionFailed(f"No controller call for command '{command.name}'", command=command.name)
