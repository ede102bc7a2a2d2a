import sys
import threading
from pathlib import Path
from urllib.parse import urlsplit

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import requests

from nodectl.client import ControllerClient
from nodectl.config import ReconcilerConfig
from nodectl.reconciler import NodeReconciler
from nodectl.simulator import ControllerSimulator, SimulatorAdapter

BASE_URL = "http://controller"


class ScriptedAdapter(SimulatorAdapter):
    """Simulator transport that can raise transport errors or hold requests."""

    def __init__(self, app):
        super().__init__(app)
        self.sent = []
        self._lock = threading.Lock()
        self._failures = {}
        self._blocks = {}

    def fail(self, method, path, exc, times=1):
        with self._lock:
            self._failures[(method, path)] = [exc, times]

    def block(self, method, path):
        entered, release = threading.Event(), threading.Event()
        with self._lock:
            self._blocks[(method, path)] = (entered, release)
        return entered, release

    def count(self, method, path):
        with self._lock:
            return sum(1 for sent in self.sent if sent == (method, path))

    def send(self, request, **kwargs):
        key = (request.method, urlsplit(request.url).path)
        with self._lock:
            self.sent.append(key)
            failure = self._failures.get(key)
            if failure and failure[1] > 0:
                failure[1] -= 1
                raise failure[0](f"scripted failure for {key}")
            block = self._blocks.pop(key, None)
        if block:
            entered, release = block
            entered.set()
            release.wait(5)
        return super().send(request, **kwargs)


@pytest.fixture
def sim():
    simulator = ControllerSimulator()
    simulator.add_node("N1", load=[{"Name": "Cpu", "NodeLoad": 50, "NodeCapacity": 200}])
    simulator.add_node("N2", status="Disabled")
    return simulator


@pytest.fixture
def adapter(sim):
    return ScriptedAdapter(sim.app)


@pytest.fixture
def session(adapter):
    s = requests.Session()
    s.mount(BASE_URL, adapter)
    return s


@pytest.fixture
def client(session):
    return ControllerClient(BASE_URL, get_retries=0, retry_backoff_s=0.0, session=session)


@pytest.fixture
def config():
    return ReconcilerConfig(
        controller_url=BASE_URL,
        get_retries=0,
        request_timeout_s=2.0,
        poll_interval_s=60.0,
        max_workers=4,
    )


@pytest.fixture
def reconciler(config, session):
    rec = NodeReconciler(config, session=session)
    try:
        yield rec
    finally:
        try:
            rec.shutdown(wait_for_tasks=False)
        except Exception:
            pass
