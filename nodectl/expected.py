"""Expected-status hints keyed by node.

A hint is set when a command is acknowledged and cleared by the next
successful poll, whatever that poll reports. Nothing is persisted.
"""

from __future__ import annotations

import threading
import logging
from typing import Dict, Optional

from nodectl.state import ExpectedStatus

logger = logging.getLogger(__name__)


class ExpectedStateTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hints: Dict[str, ExpectedStatus] = {}

    def set_expected(self, node_id: str, status: ExpectedStatus) -> None:
        status = ExpectedStatus(status)
        with self._lock:
            self._hints[node_id] = status
        logger.debug(f"Expected status for {node_id} set to {status.value}")

    def get_expected(self, node_id: str) -> Optional[ExpectedStatus]:
        with self._lock:
            return self._hints.get(node_id)

    def clear(self, node_id: str) -> None:
        with self._lock:
            previous = self._hints.pop(node_id, None)
        if previous is not None:
            logger.debug(f"Expected status for {node_id} cleared (was {previous.value})")

    def snapshot(self) -> Dict[str, ExpectedStatus]:
        with self._lock:
            return dict(self._hints)
