"""Node lifecycle reconciler.

Owns the expected-status store, the poller and the dispatcher, and runs
every operation for a node on that node's own serial queue.
"""

from __future__ import annotations

import dataclasses
import threading
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import requests

from nodectl import gate
from nodectl.aggregate import rollup_health, summarize_load
from nodectl.client import ControllerClient
from nodectl.config import ReconcilerConfig
from nodectl.dispatcher import CommandDispatcher
from nodectl.errors import NotFound, PreconditionFailed, ReconcilerError
from nodectl.expected import ExpectedStateTracker
from nodectl.poller import Poller, PollLoop
from nodectl.state import DeactivationIntent, ExpectedStatus, NodeSnapshot

logger = logging.getLogger(__name__)


class _NodeActor:
    """Runs submitted callables one at a time, in order, on a shared pool."""

    def __init__(self, name: str, executor: ThreadPoolExecutor) -> None:
        self.name = name
        self._executor = executor
        self._lock = threading.Lock()
        self._queue: Deque[Tuple[Callable[[], Any], Future]] = deque()
        self._active = False

    def submit(self, fn: Callable[[], Any]) -> Future:
        future: Future = Future()
        with self._lock:
            self._queue.append((fn, future))
            if self._active:
                return future
            self._active = True
        try:
            self._executor.submit(self._drain)
        except RuntimeError:
            with self._lock:
                self._active = False
                self._queue.clear()
            raise
        return future

    def cancel_pending(self) -> int:
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        for _, future in pending:
            future.cancel()
        return len(pending)

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._active = False
                    return
                fn, future = self._queue.popleft()
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn()
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)


@dataclass
class NodeView:
    """What the reconciler currently believes about one node."""
    name: str
    snapshot: Optional[NodeSnapshot]
    expected: Optional[ExpectedStatus]
    stale: bool
    last_error: Optional[ReconcilerError]
    enabled_commands: List[str]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "expected_status": self.expected.value if self.expected else None,
            "stale": self.stale,
            "error": self.last_error.to_dict() if self.last_error else None,
            "enabled_commands": list(self.enabled_commands),
            "node": None,
            "load": None,
            "health": None,
        }
        snap = self.snapshot
        if snap is None:
            return out
        out["fetched_at"] = snap.fetched_at
        out["node"] = snap.node.to_dict()
        if snap.load is not None:
            out["load"] = snap.load.to_dict()
            out["load"]["summary"] = summarize_load(snap.load).to_dict()
            out["load"]["stale"] = snap.load_error is not None
        if snap.health is not None:
            out["health"] = snap.health.to_dict()
            out["health"]["rollup"] = rollup_health(snap.health).to_dict()
            out["health"]["stale"] = snap.health_error is not None
        return out


class NodeReconciler:
    """Polls tracked nodes and issues gated lifecycle commands against them."""

    def __init__(
        self,
        config: Optional[ReconcilerConfig] = None,
        client: Optional[ControllerClient] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            config: Settings (defaults to ReconcilerConfig())
            client: Pre-built controller client; built from config if None
            session: requests.Session handed to the client built from config
        """
        self.config = (config or ReconcilerConfig()).validate()
        self.client = client or ControllerClient.from_config(self.config, session=session)
        self.tracker = ExpectedStateTracker()
        self.poller = Poller(
            self.client,
            events_filter=self.config.events_filter,
            max_workers=self.config.max_workers * 3,
        )
        self.dispatcher = CommandDispatcher(
            self.client,
            self.tracker,
            commands=gate.available_commands(
                actions_enabled=self.config.actions_enabled,
                advanced_actions_enabled=self.config.advanced_actions_enabled,
            ),
        )
        self.poll_loop = PollLoop(self.poll_round, interval_s=self.config.poll_interval_s)

        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="nodectl-node")
        self._actors: Dict[str, _NodeActor] = {}
        self._snapshots: Dict[str, NodeSnapshot] = {}
        self._errors: Dict[str, ReconcilerError] = {}
        self._closed = False

        for name in self.config.nodes:
            self.track(name)

    # -------- lifecycle --------

    def start(self) -> None:
        """Discover nodes if configured and start periodic polling."""
        if self.config.discover:
            self.discover()
        self.poll_loop.start()

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.poll_loop.stop()
        self._executor.shutdown(wait=wait_for_tasks)
        self.poller.close()
        self.client.close()
        logger.info("NodeReconciler shut down")

    # -------- tracking --------

    def track(self, name: str) -> bool:
        """Start tracking ``name``. Returns False if it was already tracked."""
        with self._lock:
            self._ensure_open()
            if name in self._actors:
                return False
            self._actors[name] = _NodeActor(name, self._executor)
        logger.info(f"Tracking node {name}")
        return True

    def untrack(self, name: str) -> bool:
        """
        Stop tracking ``name``.

        Queued work is cancelled; work already in flight finishes but its
        results are discarded.
        """
        with self._lock:
            actor = self._actors.pop(name, None)
            self._snapshots.pop(name, None)
            self._errors.pop(name, None)
            if actor is not None:
                self.tracker.clear(name)
        if actor is None:
            return False
        cancelled = actor.cancel_pending()
        logger.info(f"Untracked node {name} ({cancelled} queued task(s) cancelled)")
        return True

    def tracked(self) -> List[str]:
        with self._lock:
            return sorted(self._actors)

    def discover(self) -> List[str]:
        """Track every node the controller lists. Returns newly tracked names."""
        added = []
        for raw in self.client.list_nodes():
            name = raw.get("Name")
            if name and self.track(name):
                added.append(name)
        logger.info(f"Discovered {len(added)} new node(s)")
        return added

    # -------- polling --------

    def refresh(self, name: str) -> Future:
        """Queue a poll of ``name``. The future resolves to the fresh NodeSnapshot."""
        actor = self._actor(name)
        return actor.submit(lambda: self._refresh_task(name, actor))

    def refresh_all(self) -> Dict[str, Future]:
        return {name: self.refresh(name) for name in self.tracked()}

    def poll_round(self) -> Dict[str, Union[NodeSnapshot, Exception]]:
        """Poll every tracked node once and wait for the results."""
        futures = self.refresh_all()
        if futures:
            wait(list(futures.values()))
        results: Dict[str, Union[NodeSnapshot, Exception]] = {}
        failed = 0
        for name, future in futures.items():
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                failed += 1
                results[name] = error
            else:
                results[name] = future.result()
        if failed:
            logger.warning(f"Poll round finished with {failed}/{len(futures)} failure(s)")
        return results

    def _refresh_task(self, name: str, actor: _NodeActor) -> NodeSnapshot:
        guard = self._guard(name, actor)
        try:
            snapshot = self.poller.fetch_node(name)
        except NotFound:
            if guard():
                logger.warning(f"Node {name} no longer exists on the controller, untracking")
                self._drop(name, actor)
            raise
        except ReconcilerError as e:
            if guard():
                with self._lock:
                    self._errors[name] = e
                logger.warning(f"Poll of node {name} failed, keeping last snapshot: {e}")
            raise

        with self._lock:
            if self._actors.get(name) is not actor:
                logger.debug(f"Discarding poll result for untracked node {name}")
                return snapshot
            previous = self._snapshots.get(name)
            snapshot = _carry_forward(snapshot, previous)
            self._snapshots[name] = snapshot
            self._errors.pop(name, None)
            # Fresh data replaces the hint in the same step that stores it.
            self.tracker.clear(name)
        return snapshot

    # -------- commands --------

    def execute(self, name: str, command: str) -> Future:
        """
        Gate-check ``command`` now and queue it behind the node's pending work.

        Raises:
            PreconditionFailed: synchronously, when the gate rejects the command
                against the current view; nothing is queued in that case
            NotFound: ``name`` is not tracked
        """
        actor = self._actor(name)
        view = self.view(name)
        if view.snapshot is None:
            raise PreconditionFailed(f"Node '{name}' has not been polled yet", command=command)
        if command not in self.dispatcher.commands:
            raise PreconditionFailed(f"Command '{command}' is not available", command=command)
        if command not in view.enabled_commands:
            current = gate.effective_status(view.snapshot.node.status, view.expected)
            raise PreconditionFailed(
                f"{gate.COMMANDS[command].label} is not allowed while node '{name}' is {current.value}",
                command=command,
                status=current.value,
                context={"node": name},
            )
        return actor.submit(lambda: self._command_task(name, actor, command))

    def activate(self, name: str) -> Future:
        return self.execute(name, gate.ACTIVATE)

    def deactivate(self, name: str, intent: Union[int, DeactivationIntent]) -> Future:
        try:
            intent = DeactivationIntent(intent)
        except ValueError as e:
            raise PreconditionFailed(f"Unknown deactivation intent {intent!r}", command="deactivate") from e
        return self.execute(name, gate.DEACTIVATE_COMMANDS[intent])

    def remove_node_state(self, name: str) -> Future:
        return self.execute(name, gate.REMOVE_NODE_STATE)

    def restart(self, name: str) -> Future:
        return self.execute(name, gate.RESTART)

    def _command_task(self, name: str, actor: _NodeActor, command: str) -> None:
        guard = self._guard(name, actor)
        with self._lock:
            snapshot = self._snapshots.get(name)
        if snapshot is None or not guard():
            raise NotFound(f"Node '{name}' is no longer tracked", context={"command": command})
        bound = self.dispatcher.commands_for(snapshot.node, guard=guard).get(command)
        if bound is None:
            raise PreconditionFailed(f"Command '{command}' is not available", command=command)
        try:
            # Re-checked against the state at execution time.
            bound.execute()
        except NotFound:
            if guard():
                logger.warning(f"Node {name} no longer exists on the controller, untracking")
                self._drop(name, actor)
            raise

    # -------- views --------

    def view(self, name: str) -> NodeView:
        with self._lock:
            if name not in self._actors:
                raise NotFound(f"Node '{name}' is not tracked")
            snapshot = self._snapshots.get(name)
            error = self._errors.get(name)
            expected = self.tracker.get_expected(name)
        enabled: List[str] = []
        if snapshot is not None:
            enabled = self.dispatcher.enabled_for(snapshot.node, expected)
        return NodeView(
            name=name,
            snapshot=snapshot,
            expected=expected,
            stale=error is not None or (snapshot is not None and not snapshot.complete),
            last_error=error,
            enabled_commands=enabled,
        )

    def views(self) -> List[NodeView]:
        out = []
        for name in self.tracked():
            try:
                out.append(self.view(name))
            except NotFound:
                # Untracked between listing and viewing.
                continue
        return out

    # -------- helpers --------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("NodeReconciler is shut down")

    def _actor(self, name: str) -> _NodeActor:
        with self._lock:
            self._ensure_open()
            actor = self._actors.get(name)
        if actor is None:
            raise NotFound(f"Node '{name}' is not tracked")
        return actor

    def _guard(self, name: str, actor: _NodeActor) -> Callable[[], bool]:
        def is_current() -> bool:
            with self._lock:
                return self._actors.get(name) is actor
        return is_current

    def _drop(self, name: str, actor: _NodeActor) -> None:
        with self._lock:
            if self._actors.get(name) is not actor:
                return
        self.untrack(name)


def _carry_forward(snapshot: NodeSnapshot, previous: Optional[NodeSnapshot]) -> NodeSnapshot:
    """Keep the previous load/health when this poll failed to fetch them."""
    if previous is None or snapshot.complete:
        return snapshot
    changes: Dict[str, Any] = {}
    if snapshot.load_error is not None and previous.load is not None:
        changes["load"] = previous.load
    if snapshot.health_error is not None and previous.health is not None:
        changes["health"] = previous.health
    return dataclasses.replace(snapshot, **changes) if changes else snapshot
