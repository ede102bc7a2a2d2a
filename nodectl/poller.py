"""Node polling: descriptor, load and health fetched as independent calls."""

from __future__ import annotations

import time
import threading
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from nodectl.client import ControllerClient
from nodectl.state import Health, HealthStateFilterFlags, LoadInformation, Node, NodeSnapshot

logger = logging.getLogger(__name__)


class Refreshable(ABC):
	"""Something that can fetch a fresh snapshot of itself from the controller."""

	@abstractmethod
	def refresh(self) -> Any:
		raise NotImplementedError


class NodeDescriptorSource(Refreshable):
	def __init__(self, client: ControllerClient, node_name: str) -> None:
		self.client = client
		self.node_name = node_name

	def refresh(self) -> Node:
		return Node.from_raw(self.client.get_node(self.node_name))


class NodeLoadSource(Refreshable):
	def __init__(self, client: ControllerClient, node_name: str) -> None:
		self.client = client
		self.node_name = node_name

	def refresh(self) -> LoadInformation:
		raw = self.client.get_node_load_information(self.node_name)
		load = LoadInformation.from_raw(raw)
		if not load.node_name:
			load = LoadInformation(node_name=self.node_name, metrics=load.metrics)
		return load


class NodeHealthSource(Refreshable):
	def __init__(
		self,
		client: ControllerClient,
		node_name: str,
		events_filter: HealthStateFilterFlags = HealthStateFilterFlags.DEFAULT,
	) -> None:
		self.client = client
		self.node_name = node_name
		self.events_filter = events_filter

	def refresh(self) -> Health:
		raw = self.client.get_node_health(self.node_name, self.events_filter)
		return Health.from_raw(raw, events_filter=self.events_filter)


class Poller:
	"""
	Fetches a NodeSnapshot per call.

	The three fetches run in parallel. Only the descriptor fetch decides
	success; load and health failures are carried on the snapshot so the
	caller can keep its previous copy of that component. The poller does not
	touch expected-status hints; the caller clears them when it stores the
	snapshot.
	"""

	def __init__(
		self,
		client: ControllerClient,
		events_filter: HealthStateFilterFlags = HealthStateFilterFlags.DEFAULT,
		max_workers: int = 6,
	) -> None:
		"""
		Args:
			client: Controller REST client
			events_filter: Health events filter passed to the controller
			max_workers: Threads for the parallel component fetches
		"""
		self.client = client
		self.events_filter = events_filter
		self._pool = ThreadPoolExecutor(max_workers=max(3, max_workers), thread_name_prefix="nodectl-fetch")

	def fetch_node(self, node_name: str) -> NodeSnapshot:
		"""
		Poll one node.

		Returns:
			NodeSnapshot

		Raises:
			NetworkFailure, NotFound, AuthFailure: descriptor fetch failed
		"""
		node_f = self._pool.submit(NodeDescriptorSource(self.client, node_name).refresh)
		load_f = self._pool.submit(NodeLoadSource(self.client, node_name).refresh)
		health_f = self._pool.submit(NodeHealthSource(self.client, node_name, self.events_filter).refresh)

		# Raises on descriptor failure; the other two futures finish on their own.
		node = node_f.result()

		load, load_error = _component(load_f, "load", node_name)
		health, health_error = _component(health_f, "health", node_name)

		return NodeSnapshot(
			node=node,
			load=load,
			health=health,
			fetched_at=time.time(),
			load_error=load_error,
			health_error=health_error,
		)

	def close(self) -> None:
		self._pool.shutdown(wait=False)


def _component(future: Future, what: str, node_name: str):
	try:
		return future.result(), None
	except Exception as e:
		# A bad load/health payload must not fail a poll whose descriptor arrived.
		logger.warning(f"Failed to fetch {what} for node {node_name}: {e}")
		return None, e


class PollLoop:
	"""Calls ``poll_once`` every ``interval_s`` seconds on a daemon thread."""

	def __init__(self, poll_once: Callable[[], Any], interval_s: float = 15.0) -> None:
		self.poll_once = poll_once
		self.interval_s = interval_s

		self._running = False
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()

	@property
	def running(self) -> bool:
		return self._running

	def start(self) -> None:
		if self._running:
			logger.warning("PollLoop already running")
			return

		self._running = True
		self._stop_event.clear()
		self._thread = threading.Thread(target=self._loop, name="nodectl-poll", daemon=True)
		self._thread.start()
		logger.info(f"PollLoop started (interval {self.interval_s}s)")

	def stop(self) -> None:
		if not self._running:
			return

		self._running = False
		self._stop_event.set()
		if self._thread:
			self._thread.join(timeout=5.0)
		self._thread = None
		logger.info("PollLoop stopped")

	def _loop(self) -> None:
		while not self._stop_event.is_set():
			try:
				self.poll_once()
			except Exception as e:
				# A failed round must not kill the loop.
				logger.error(f"Error during poll round: {e}")

			self._stop_event.wait(self.interval_s)
