"""
Node lifecycle reconciler package.

Modules:
- state: node, load and health snapshots parsed from controller payloads
- client: REST client for the controller's /Nodes endpoints
- poller: parallel descriptor/load/health fetches and the periodic poll loop
- expected: expected-status hints bridging command acknowledgement and the next poll
- gate: which lifecycle commands a node accepts
- dispatcher: gated activate/deactivate/remove-state/restart
- reconciler: per-node serial execution, tracking and stale-data handling
- api: JSON service over the reconciler
- simulator: in-process controller for local runs and tests
"""
