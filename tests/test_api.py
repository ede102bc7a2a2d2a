import pytest

from nodectl.api import create_app


@pytest.fixture
def api(reconciler):
    app = create_app(reconciler)
    app.config["TESTING"] = True
    return app.test_client()


def test_healthz(api):
    resp = api.get("/healthz")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert body["polling"] is False


def test_untracked_node_is_404(api):
    resp = api.get("/nodes/N1")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "NOT_FOUND"


def test_track_refresh_and_view(api):
    resp = api.post("/nodes", json={"name": "N1"})
    assert resp.status_code == 201
    assert api.post("/nodes", json={"name": "N1"}).status_code == 200
    assert api.post("/nodes", json={}).status_code == 400

    resp = api.post("/nodes/N1/refresh")
    assert resp.status_code == 200
    view = resp.get_json()
    assert view["node"]["status"] == "Up"
    assert view["stale"] is False
    metric = view["load"]["metrics"][0]
    assert metric["load_capacity_ratio_string"] == "25.0%"
    assert view["load"]["summary"]["hottest_metric"] == "Cpu"
    assert view["health"]["rollup"]["state"] == "Ok"

    nodes = api.get("/nodes").get_json()["nodes"]
    assert [n["name"] for n in nodes] == ["N1"]


def test_action_requires_confirmation(api):
    api.post("/nodes", json={"name": "N1"})
    api.post("/nodes/N1/refresh")

    resp = api.post("/nodes/N1/actions/deactivate_restart", json={})
    assert resp.status_code == 400

    resp = api.post("/nodes/N1/actions/deactivate_restart", json={"confirm": True})
    assert resp.status_code == 200
    view = resp.get_json()["view"]
    assert view["expected_status"] == "Disabled"
    assert "activate" in view["enabled_commands"]


def test_gated_action_is_conflict(api):
    api.post("/nodes", json={"name": "N1"})
    api.post("/nodes/N1/refresh")
    resp = api.post("/nodes/N1/actions/remove_node_state", json={"confirm": True})
    assert resp.status_code == 409
    assert resp.get_json()["error"]["code"] == "PRECONDITION_FAILED"


def test_activate_needs_no_confirmation(api):
    api.post("/nodes", json={"name": "N2"})
    api.post("/nodes/N2/refresh")
    resp = api.post("/nodes/N2/actions/activate")
    assert resp.status_code == 200
    assert resp.get_json()["view"]["expected_status"] == "Up"


def test_list_actions(api):
    api.post("/nodes", json={"name": "N1"})
    api.post("/nodes/N1/refresh")
    actions = {a["name"]: a for a in api.get("/nodes/N1/actions").get_json()["actions"]}
    assert actions["restart"]["enabled"] is True
    assert actions["activate"]["enabled"] is False
    assert actions["remove_node_state"]["requires_confirmation"] is True


def test_failed_refresh_reports_stale_view(api, sim):
    api.post("/nodes", json={"name": "N1"})
    api.post("/nodes/N1/refresh")
    sim.inject_fault("N1", "node", 503)
    resp = api.post("/nodes/N1/refresh")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["error"]["code"] == "NETWORK_FAILURE"
    assert body["view"]["stale"] is True
    assert body["view"]["node"]["name"] == "N1"


def test_untrack(api):
    api.post("/nodes", json={"name": "N1"})
    assert api.delete("/nodes/N1").status_code == 200
    assert api.delete("/nodes/N1").status_code == 404
