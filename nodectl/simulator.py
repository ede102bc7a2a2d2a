"""In-process cluster controller for local runs and tests.

Serves the /Nodes endpoints the reconciler consumes. Status transitions are
stepped lazily: a command queues the statuses the node will report on its next
descriptor GETs, so the lag between acknowledgement and observation is visible.

Run standalone:
    python -m nodectl.simulator --port 19080
"""

from __future__ import annotations

import argparse
import threading
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import requests
from flask import Flask, jsonify, request
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

_EVENT_FLAGS = {"Ok": 2, "Warning": 4, "Error": 8}


def _error(status: int, code: str, message: str):
    return jsonify({"Error": {"Code": code, "Message": message}}), status


class ControllerSimulator:
    """Mutable cluster state plus a Flask app serving it."""

    def __init__(self, api_version: str = "6.0", auth_token: Optional[str] = None, page_size: int = 100) -> None:
        self.api_version = api_version
        self.auth_token = auth_token
        self.page_size = page_size
        self._lock = threading.Lock()
        self._nodes: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, Deque[str]] = {}
        self._load: Dict[str, List[Dict[str, Any]]] = {}
        self._health: Dict[str, Dict[str, Any]] = {}
        self._faults: Dict[Tuple[str, str], Deque[Tuple[int, str]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.app = self._build_app()

    # -------- seeding & fault injection --------

    def add_node(
        self,
        name: str,
        status: str = "Up",
        load: Optional[List[Dict[str, Any]]] = None,
        health_state: str = "Ok",
        events: Optional[List[Dict[str, Any]]] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        with self._lock:
            index = len(self._nodes)
            raw = {
                "Name": name,
                "Id": {"Id": f"{index + 1:032x}"},
                "Type": "NodeType0",
                "IpAddressOrFQDN": f"10.0.0.{index + 4}",
                "NodeStatus": status,
                "NodeUpTimeInSeconds": "3600",
                "HealthState": health_state,
                "IsSeedNode": index == 0,
                "UpgradeDomain": str(index % 5),
                "FaultDomain": f"fd:/{index % 5}",
                "InstanceId": str(131000000000000000 + index),
                "IsStopped": False,
                "CodeVersion": "10.0.0.0",
                "ConfigVersion": "1",
            }
            raw.update(fields)
            self._nodes[name] = raw
            self._pending[name] = deque()
            self._load[name] = list(load or [])
            self._health[name] = {
                "AggregatedHealthState": health_state,
                "HealthEvents": list(events or []),
                "UnhealthyEvaluations": [],
            }
            return dict(raw)

    def set_status(self, name: str, status: str) -> None:
        with self._lock:
            self._nodes[name]["NodeStatus"] = status
            self._pending[name].clear()

    def status_of(self, name: str) -> Optional[str]:
        with self._lock:
            node = self._nodes.get(name)
            return node["NodeStatus"] if node else None

    def set_load(self, name: str, metrics: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._load[name] = list(metrics)

    def remove_node(self, name: str) -> None:
        with self._lock:
            self._nodes.pop(name, None)
            self._pending.pop(name, None)
            self._load.pop(name, None)
            self._health.pop(name, None)

    def inject_fault(self, name: str, endpoint: str, status: int, code: str = "FABRIC_E_COMMUNICATION_ERROR", times: int = 1) -> None:
        """Make the next ``times`` calls to ``endpoint`` for ``name`` fail.

        ``endpoint`` is one of: node, load, health, Activate, Deactivate,
        RemoveNodeState, Restart.
        """
        with self._lock:
            queue = self._faults.setdefault((name, endpoint), deque())
            for _ in range(times):
                queue.append((status, code))

    def session(self, base_url: str = "http://controller") -> requests.Session:
        """A requests.Session whose calls to ``base_url`` hit this simulator."""
        session = requests.Session()
        session.mount(base_url, SimulatorAdapter(self.app))
        return session

    # -------- transitions --------

    def _advance(self, name: str) -> None:
        pending = self._pending[name]
        if pending:
            self._nodes[name]["NodeStatus"] = pending.popleft()

    def _fault(self, name: str, endpoint: str):
        queue = self._faults.get((name, endpoint))
        if queue:
            status, code = queue.popleft()
            return _error(status, code, f"Injected fault on {endpoint}")
        return None

    # -------- HTTP surface --------

    def _build_app(self) -> Flask:
        app = Flask(__name__)
        sim = self

        @app.before_request
        def check_request():
            if request.args.get("api-version") != sim.api_version:
                return _error(400, "FABRIC_E_INVALID_API_VERSION", "Missing or unsupported api-version")
            if sim.auth_token and request.headers.get("Authorization") != f"Bearer {sim.auth_token}":
                return _error(401, "FABRIC_E_UNAUTHORIZED", "Unauthorized")
            return None

        @app.get("/Nodes")
        def list_nodes():
            token = int(request.args.get("ContinuationToken") or 0)
            with sim._lock:
                names = sorted(sim._nodes)
                page = [dict(sim._nodes[n]) for n in names[token:token + sim.page_size]]
            nxt = token + sim.page_size
            return jsonify({"ContinuationToken": str(nxt) if nxt < len(names) else "", "Items": page})

        @app.get("/Nodes/<name>")
        def get_node(name: str):
            with sim._lock:
                sim.calls.append(("GET", f"/Nodes/{name}"))
                fault = sim._fault(name, "node")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                sim._advance(name)
                return jsonify(dict(sim._nodes[name]))

        @app.get("/Nodes/<name>/LoadInformation")
        def get_load(name: str):
            with sim._lock:
                sim.calls.append(("GET", f"/Nodes/{name}/LoadInformation"))
                fault = sim._fault(name, "load")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                return jsonify({"NodeName": name, "NodeLoadMetricInformation": list(sim._load[name])})

        @app.get("/Nodes/<name>/Health")
        def get_health(name: str):
            flags = int(request.args.get("eventsFilter") or 0)
            with sim._lock:
                sim.calls.append(("GET", f"/Nodes/{name}/Health"))
                fault = sim._fault(name, "health")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                health = dict(sim._health[name])
            events = health["HealthEvents"]
            if flags == 1:
                events = []
            elif flags not in (0, 65535):
                events = [e for e in events if _EVENT_FLAGS.get(e.get("HealthState"), 0) & flags]
            health["HealthEvents"] = events
            return jsonify(health)

        @app.post("/Nodes/<name>/$/Activate")
        def activate(name: str):
            with sim._lock:
                sim.calls.append(("POST", f"/Nodes/{name}/$/Activate"))
                fault = sim._fault(name, "Activate")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                sim._pending[name] = deque(["Up"])
            return "", 200

        @app.post("/Nodes/<name>/$/Deactivate")
        def deactivate(name: str):
            body = request.get_json(force=True, silent=True) or {}
            intent = body.get("DeactivationIntent")
            with sim._lock:
                sim.calls.append(("POST", f"/Nodes/{name}/$/Deactivate"))
                fault = sim._fault(name, "Deactivate")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                if intent not in (1, 2, 3):
                    return _error(400, "E_INVALIDARG", f"Invalid DeactivationIntent {intent!r}")
                if sim._nodes[name]["NodeStatus"] == "Down":
                    return _error(400, "FABRIC_E_NODE_IS_DOWN", f"Node {name} is down")
                sim._pending[name] = deque(["Disabling", "Disabled"])
            return "", 200

        @app.post("/Nodes/<name>/$/RemoveNodeState")
        def remove_node_state(name: str):
            with sim._lock:
                sim.calls.append(("POST", f"/Nodes/{name}/$/RemoveNodeState"))
                fault = sim._fault(name, "RemoveNodeState")
                if fault:
                    return fault
                if name not in sim._nodes:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                if sim._nodes[name]["NodeStatus"] != "Down":
                    return _error(400, "FABRIC_E_NODE_IS_UP", f"Node {name} is not down")
            sim.remove_node(name)
            return "", 200

        @app.post("/Nodes/<name>/$/Restart")
        def restart(name: str):
            body = request.get_json(force=True, silent=True) or {}
            with sim._lock:
                sim.calls.append(("POST", f"/Nodes/{name}/$/Restart"))
                fault = sim._fault(name, "Restart")
                if fault:
                    return fault
                node = sim._nodes.get(name)
                if node is None:
                    return _error(404, "FABRIC_E_NODE_NOT_FOUND", f"Node {name} not found")
                instance_id = str(body.get("NodeInstanceId", "0"))
                if instance_id != "0" and instance_id != node["InstanceId"]:
                    return _error(400, "FABRIC_E_INSTANCE_ID_MISMATCH", "Node instance id does not match")
                node["InstanceId"] = str(int(node["InstanceId"]) + 1)
                node["NodeUpTimeInSeconds"] = "0"
                sim._pending[name] = deque(["Down", "Up"])
            return "", 200

        return app


class SimulatorAdapter(BaseAdapter):
    """requests transport that dispatches to a Flask app's test client."""

    def __init__(self, app: Flask) -> None:
        super().__init__()
        self.app = app

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        body = request.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        # One test client per request; they are cheap and not shared across threads.
        result = self.app.test_client().open(
            parts.path,
            method=request.method,
            query_string=parts.query,
            data=body,
            headers=dict(request.headers),
        )

        response = requests.Response()
        response.status_code = result.status_code
        response.reason = result.status.partition(" ")[2]
        response.headers = CaseInsensitiveDict(result.headers)
        response._content = result.get_data()
        response.encoding = "utf-8"
        response.url = request.url
        response.request = request
        return response

    def close(self) -> None:
        pass


def seed_demo(sim: ControllerSimulator, count: int = 5) -> None:
    """Seed ``count`` nodes with a couple of load metrics each. Safe to call once."""
    for i in range(count):
        sim.add_node(
            f"_Node_{i}",
            load=[
                {"Name": "__CpuCapacity__", "NodeLoad": 10 * (i + 1), "NodeCapacity": 100},
                {"Name": "MemoryInMb", "NodeLoad": 512 * (i + 1), "NodeCapacity": 8192},
                {"Name": "Count", "NodeLoad": i + 1},
            ],
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a simulated cluster controller")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=19080)
    parser.add_argument("--nodes", type=int, default=5)
    args = parser.parse_args()

    sim = ControllerSimulator()
    seed_demo(sim, args.nodes)
    sim.app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
