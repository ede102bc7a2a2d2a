"""REST client for the cluster controller's node endpoints."""

from __future__ import annotations

import time
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from nodectl.config import ReconcilerConfig
from nodectl.errors import AuthFailure, NetworkFailure, NotFound, ServerRejected
from nodectl.state import DeactivationIntent, HealthStateFilterFlags

logger = logging.getLogger(__name__)

NODE_NOT_FOUND_CODES = ("FABRIC_E_NODE_NOT_FOUND", "FABRIC_E_NODE_NOT_FOUND_IN_CLUSTER")
TRANSIENT_STATUS = (502, 503, 504)


class ControllerClient:
    """
    Thin wrapper over the controller's /Nodes API.

    GET requests are retried on connection errors and timeouts up to
    ``get_retries`` times. POST requests are sent exactly once.
    """

    def __init__(
        self,
        base_url: str,
        api_version: str = "6.0",
        timeout_s: float = 10.0,
        get_retries: int = 2,
        retry_backoff_s: float = 0.2,
        auth_token: Optional[str] = None,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Args:
            base_url: Controller endpoint, e.g. http://localhost:19080
            api_version: Value sent as the api-version query parameter
            timeout_s: Per-request timeout; expiry surfaces as NetworkFailure
            get_retries: Extra attempts for GETs on transport errors
            retry_backoff_s: Base sleep between GET attempts (doubles each time)
            auth_token: Optional bearer token
            verify_tls: Verify the controller's TLS certificate
            session: Pre-built requests.Session (tests mount adapters on it)
        """
        self.base_url = base_url.rstrip('/')
        self.api_version = api_version
        self.timeout_s = timeout_s
        self.get_retries = max(0, int(get_retries))
        self.retry_backoff_s = retry_backoff_s
        self.session = session or requests.Session()
        self.session.verify = verify_tls
        self.session.headers.setdefault("Accept", "application/json")
        if auth_token:
            self.session.headers["Authorization"] = f"Bearer {auth_token}"

    @classmethod
    def from_config(cls, config: ReconcilerConfig, session: Optional[requests.Session] = None) -> "ControllerClient":
        return cls(
            config.controller_url,
            api_version=config.api_version,
            timeout_s=config.request_timeout_s,
            get_retries=config.get_retries,
            auth_token=config.auth_token,
            verify_tls=config.verify_tls,
            session=session,
        )

    def close(self) -> None:
        self.session.close()

    # -------- queries --------

    def get_node(self, node_name: str) -> Dict[str, Any]:
        return self._get(self._node_path(node_name), node_name=node_name)

    def get_node_load_information(self, node_name: str) -> Dict[str, Any]:
        return self._get(self._node_path(node_name, "/LoadInformation"), node_name=node_name)

    def get_node_health(
        self,
        node_name: str,
        events_filter: HealthStateFilterFlags = HealthStateFilterFlags.DEFAULT,
    ) -> Dict[str, Any]:
        return self._get(
            self._node_path(node_name, "/Health"),
            params={"eventsFilter": int(events_filter)},
            node_name=node_name,
        )

    def list_nodes(self) -> List[Dict[str, Any]]:
        """Return every node descriptor, following continuation tokens."""
        items: List[Dict[str, Any]] = []
        token = None
        while True:
            params = {"ContinuationToken": token} if token else None
            page = self._get("/Nodes", params=params)
            if isinstance(page, list):
                items.extend(page)
                break
            items.extend(page.get("Items") or [])
            token = page.get("ContinuationToken")
            if not token:
                break
        return items

    # -------- commands (never retried) --------

    def activate_node(self, node_name: str) -> None:
        self._post(self._node_path(node_name, "/$/Activate"), node_name=node_name)

    def deactivate_node(self, node_name: str, intent: DeactivationIntent) -> None:
        self._post(
            self._node_path(node_name, "/$/Deactivate"),
            body={"DeactivationIntent": int(intent)},
            node_name=node_name,
        )

    def remove_node_state(self, node_name: str) -> None:
        self._post(self._node_path(node_name, "/$/RemoveNodeState"), node_name=node_name)

    def restart_node(self, node_name: str, instance_id: str) -> None:
        self._post(
            self._node_path(node_name, "/$/Restart"),
            body={"NodeInstanceId": instance_id or "0"},
            node_name=node_name,
        )

    # -------- plumbing --------

    def _node_path(self, node_name: str, suffix: str = "") -> str:
        return f"/Nodes/{quote(node_name, safe='')}{suffix}"

    def _params(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = {"api-version": self.api_version}
        if params:
            merged.update(params)
        return merged

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, node_name: Optional[str] = None) -> Any:
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            try:
                response = self.session.get(url, params=self._params(params), timeout=self.timeout_s)
                break
            except requests.exceptions.RequestException as e:
                if attempt >= self.get_retries:
                    raise self._transport_error("GET", path, e, node_name) from e
                delay = self.retry_backoff_s * (2 ** attempt)
                attempt += 1
                logger.debug(f"GET {path} failed ({e}), retry {attempt}/{self.get_retries} in {delay:.2f}s")
                time.sleep(delay)
        self._raise_for_status(response, "GET", path, node_name)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ServerRejected(
                f"Controller returned a non-JSON body for GET {path}",
                status_code=response.status_code,
            ) from e

    def _post(self, path: str, body: Optional[Dict[str, Any]] = None, node_name: Optional[str] = None) -> None:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, params=self._params(None), json=body or {}, timeout=self.timeout_s)
        except requests.exceptions.RequestException as e:
            raise self._transport_error("POST", path, e, node_name) from e
        self._raise_for_status(response, "POST", path, node_name)
        logger.info(f"POST {path} accepted ({response.status_code})")

    def _transport_error(
        self,
        method: str,
        path: str,
        error: requests.exceptions.RequestException,
        node_name: Optional[str],
    ) -> NetworkFailure:
        context = {"method": method, "path": path}
        if node_name:
            context["node"] = node_name
        if isinstance(error, requests.exceptions.Timeout):
            return NetworkFailure(f"Request timed out after {self.timeout_s}s", context=context)
        if isinstance(error, requests.exceptions.ConnectionError):
            return NetworkFailure(f"Failed to connect to controller at {self.base_url}", context=context)
        return NetworkFailure(f"Request failed: {error}", context=context)

    def _raise_for_status(
        self,
        response: requests.Response,
        method: str,
        path: str,
        node_name: Optional[str],
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        error_code, message = _error_details(response)
        context: Dict[str, Any] = {"method": method, "path": path}
        if node_name:
            context["node"] = node_name

        if status == 404 or error_code in NODE_NOT_FOUND_CODES:
            raise NotFound(message or f"Node '{node_name}' not found", context=context)
        if status in (401, 403):
            raise AuthFailure(message or f"Controller refused credentials ({status})", context=context)
        if status in TRANSIENT_STATUS:
            raise NetworkFailure(message or f"Controller unavailable ({status})", context=context)
        raise ServerRejected(
            message or f"Controller rejected {method} {path}",
            status_code=status,
            error_code=error_code,
            context=context,
        )


def _error_details(response: requests.Response) -> tuple:
    """Pull (code, message) out of a {"Error": {"Code", "Message"}} body."""
    try:
        data = response.json()
    except ValueError:
        return None, (response.text or "")[:500]
    if not isinstance(data, dict):
        return None, None
    error = data.get("Error", data)
    if not isinstance(error, dict):
        return None, str(error)
    return error.get("Code"), error.get("Message")
