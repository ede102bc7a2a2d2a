import pytest
import requests

from nodectl import gate
from nodectl.errors import NetworkFailure, NotFound, PreconditionFailed, ServerRejected
from nodectl.reconciler import NodeReconciler
from nodectl.state import ExpectedStatus, NodeStatus

WAIT = 5


def _poll(rec, name):
    return rec.refresh(name).result(timeout=WAIT)


def test_poll_builds_snapshot_with_load_ratio(reconciler):
    reconciler.track("N1")
    snapshot = _poll(reconciler, "N1")
    assert snapshot.node.status is NodeStatus.UP
    metric = snapshot.load.get("Cpu")
    assert metric.load_capacity_ratio == 0.25
    assert metric.load_capacity_ratio_string == "25.0%"
    assert snapshot.health is not None
    assert reconciler.view("N1").stale is False


def test_activate_sets_up_hint_until_next_poll(reconciler, sim):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    reconciler.activate("N2").result(timeout=WAIT)

    assert reconciler.tracker.get_expected("N2") is ExpectedStatus.UP
    view = reconciler.view("N2")
    # Still Disabled on the last poll, but the hint wins.
    assert view.snapshot.node.status is NodeStatus.DISABLED
    assert gate.ACTIVATE not in view.enabled_commands

    snapshot = _poll(reconciler, "N2")
    assert snapshot.node.status is NodeStatus.UP
    assert reconciler.tracker.get_expected("N2") is None


def test_hint_cleared_even_when_poll_does_not_confirm(reconciler, sim):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    reconciler.activate("N2").result(timeout=WAIT)
    sim.set_status("N2", "Disabled")

    _poll(reconciler, "N2")
    assert reconciler.tracker.get_expected("N2") is None
    assert gate.ACTIVATE in reconciler.view("N2").enabled_commands


def test_deactivate_restart_then_disabling_poll(reconciler, sim):
    reconciler.track("N1")
    _poll(reconciler, "N1")

    reconciler.deactivate("N1", 2).result(timeout=WAIT)
    assert reconciler.tracker.get_expected("N1") is ExpectedStatus.DISABLED
    view = reconciler.view("N1")
    assert view.snapshot.node.status is NodeStatus.UP
    assert gate.ACTIVATE in view.enabled_commands

    snapshot = _poll(reconciler, "N1")
    assert snapshot.node.status is NodeStatus.DISABLING
    assert reconciler.tracker.get_expected("N1") is None
    assert gate.ACTIVATE in reconciler.view("N1").enabled_commands


def test_gate_failure_is_synchronous_and_never_hits_network(reconciler, adapter):
    reconciler.track("N1")
    _poll(reconciler, "N1")
    with pytest.raises(PreconditionFailed) as info:
        reconciler.remove_node_state("N1")
    assert info.value.command == gate.REMOVE_NODE_STATE
    assert info.value.status == "Up"
    assert not any(method == "POST" for method, _ in adapter.sent)


def test_commands_need_a_snapshot(reconciler):
    reconciler.track("N1")
    with pytest.raises(PreconditionFailed):
        reconciler.restart("N1")


def test_unknown_node_is_not_found(reconciler):
    with pytest.raises(NotFound):
        reconciler.refresh("ghost")
    with pytest.raises(NotFound):
        reconciler.view("ghost")


def test_invalid_intent_rejected(reconciler):
    reconciler.track("N1")
    _poll(reconciler, "N1")
    with pytest.raises(PreconditionFailed):
        reconciler.deactivate("N1", 9)


def test_server_rejection_propagates_without_hint(reconciler, sim):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    sim.inject_fault("N2", "Activate", 400, code="FABRIC_E_NODE_IS_UP")
    with pytest.raises(ServerRejected):
        reconciler.activate("N2").result(timeout=WAIT)
    assert reconciler.tracker.get_expected("N2") is None
    assert sum(1 for call in sim.calls if call == ("POST", "/Nodes/N2/$/Activate")) == 1


def test_failed_poll_keeps_last_snapshot_and_hint(reconciler, sim):
    reconciler.track("N1")
    first = _poll(reconciler, "N1")
    reconciler.deactivate("N1", 1).result(timeout=WAIT)

    sim.inject_fault("N1", "node", 503)
    with pytest.raises(NetworkFailure):
        _poll(reconciler, "N1")

    view = reconciler.view("N1")
    assert view.snapshot is first
    assert view.stale is True
    assert isinstance(view.last_error, NetworkFailure)
    assert reconciler.tracker.get_expected("N1") is ExpectedStatus.DISABLED

    _poll(reconciler, "N1")
    view = reconciler.view("N1")
    assert view.stale is False
    assert view.last_error is None
    assert view.expected is None


def test_failed_load_fetch_keeps_previous_load(reconciler, sim):
    reconciler.track("N1")
    first = _poll(reconciler, "N1")
    sim.set_load("N1", [{"Name": "Cpu", "NodeLoad": 150, "NodeCapacity": 200}])
    sim.inject_fault("N1", "load", 500)

    snapshot = _poll(reconciler, "N1")
    assert snapshot.load_error is not None
    assert snapshot.load is first.load
    assert reconciler.view("N1").stale is True

    snapshot = _poll(reconciler, "N1")
    assert snapshot.load.get("Cpu").load_capacity_ratio_string == "75.0%"


def test_removed_node_is_untracked(reconciler, sim):
    reconciler.track("N1")
    _poll(reconciler, "N1")
    sim.remove_node("N1")
    with pytest.raises(NotFound):
        _poll(reconciler, "N1")
    assert "N1" not in reconciler.tracked()


def test_remove_node_state_on_down_node(reconciler, sim):
    sim.add_node("N3", status="Down")
    reconciler.track("N3")
    _poll(reconciler, "N3")
    reconciler.remove_node_state("N3").result(timeout=WAIT)
    assert reconciler.tracker.get_expected("N3") is None
    with pytest.raises(NotFound):
        _poll(reconciler, "N3")


def test_restart_uses_polled_instance_id(reconciler, sim):
    reconciler.track("N1")
    before = _poll(reconciler, "N1").node.instance_id
    reconciler.restart("N1").result(timeout=WAIT)
    assert reconciler.tracker.get_expected("N1") is None
    after = _poll(reconciler, "N1")
    assert after.node.status is NodeStatus.DOWN
    assert after.node.instance_id != before


def test_operations_on_one_node_run_in_order(reconciler, sim):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    start = len(sim.calls)

    command = reconciler.activate("N2")
    poll = reconciler.refresh("N2")
    poll.result(timeout=WAIT)

    assert command.done()
    calls = [c for c in sim.calls[start:] if c[1] in ("/Nodes/N2", "/Nodes/N2/$/Activate")]
    assert calls == [("POST", "/Nodes/N2/$/Activate"), ("GET", "/Nodes/N2")]
    assert reconciler.tracker.get_expected("N2") is None


def test_slow_node_does_not_stall_others(reconciler, adapter):
    reconciler.track("N1")
    reconciler.track("N2")
    entered, release = adapter.block("GET", "/Nodes/N1")
    slow = reconciler.refresh("N1")
    assert entered.wait(WAIT)

    fast = reconciler.refresh("N2").result(timeout=WAIT)
    assert fast.node.name == "N2"
    assert not slow.done()

    release.set()
    assert slow.result(timeout=WAIT).node.name == "N1"


def test_poll_completing_after_untrack_is_discarded(reconciler, adapter):
    reconciler.track("N1")
    entered, release = adapter.block("GET", "/Nodes/N1")
    inflight = reconciler.refresh("N1")
    queued = reconciler.refresh("N1")
    assert entered.wait(WAIT)

    reconciler.untrack("N1")
    release.set()
    inflight.result(timeout=WAIT)
    assert queued.cancelled()

    reconciler.track("N1")
    assert reconciler.view("N1").snapshot is None


def test_command_completing_after_untrack_sets_no_hint(reconciler, adapter):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    entered, release = adapter.block("POST", "/Nodes/N2/$/Activate")
    command = reconciler.activate("N2")
    assert entered.wait(WAIT)

    reconciler.untrack("N2")
    release.set()
    command.result(timeout=WAIT)
    assert reconciler.tracker.get_expected("N2") is None


def test_poll_round_reports_each_node(reconciler, sim):
    reconciler.track("N1")
    reconciler.track("N2")
    sim.inject_fault("N2", "node", 503)
    results = reconciler.poll_round()
    assert results["N1"].node.name == "N1"
    assert isinstance(results["N2"], NetworkFailure)


def test_discover_tracks_listed_nodes(reconciler):
    added = reconciler.discover()
    assert sorted(added) == ["N1", "N2"]
    assert reconciler.discover() == []


def test_disabled_advanced_actions(config, session):
    config.advanced_actions_enabled = False
    rec = NodeReconciler(config, session=session)
    try:
        rec.track("N2")
        _poll(rec, "N2")
        assert rec.view("N2").enabled_commands == [gate.RESTART]
        with pytest.raises(PreconditionFailed):
            rec.activate("N2")
    finally:
        rec.shutdown()


def test_configured_nodes_are_tracked(config, session):
    config.nodes = ["N1", "N2"]
    rec = NodeReconciler(config, session=session)
    try:
        assert rec.tracked() == ["N1", "N2"]
    finally:
        rec.shutdown()


def test_shutdown_rejects_new_work(config, session):
    rec = NodeReconciler(config, session=session)
    rec.track("N1")
    rec.shutdown()
    with pytest.raises(RuntimeError):
        rec.refresh("N1")


def test_timeout_surfaces_as_network_failure(reconciler, adapter):
    reconciler.track("N1")
    adapter.fail("GET", "/Nodes/N1", requests.exceptions.ReadTimeout)
    with pytest.raises(NetworkFailure):
        _poll(reconciler, "N1")
    assert "N1" in reconciler.tracked()


def test_hint_holds_while_a_poll_is_still_fetching(reconciler, adapter):
    reconciler.track("N2")
    _poll(reconciler, "N2")
    reconciler.activate("N2").result(timeout=WAIT)

    entered, release = adapter.block("GET", "/Nodes/N2/LoadInformation")
    poll = reconciler.refresh("N2")
    assert entered.wait(WAIT)
    try:
        # Descriptor may already be back; nothing is stored until the poll completes.
        view = reconciler.view("N2")
        assert view.expected is ExpectedStatus.UP
        assert view.snapshot.node.status is NodeStatus.DISABLED
        assert gate.ACTIVATE not in view.enabled_commands
        with pytest.raises(PreconditionFailed):
            reconciler.activate("N2")
    finally:
        release.set()

    assert poll.result(timeout=WAIT).node.status is NodeStatus.UP
    assert reconciler.tracker.get_expected("N2") is None


def test_command_on_removed_node_untracks_it(reconciler, sim):
    reconciler.track("N1")
    _poll(reconciler, "N1")
    sim.inject_fault("N1", "Deactivate", 404, code="FABRIC_E_NODE_NOT_FOUND")
    with pytest.raises(NotFound):
        reconciler.deactivate("N1", 1).result(timeout=WAIT)
    assert "N1" not in reconciler.tracked()
    assert reconciler.tracker.get_expected("N1") is None


def test_malformed_health_payload_does_not_fail_poll(reconciler, monkeypatch):
    reconciler.track("N1")
    first = _poll(reconciler, "N1")

    def broken_health(name, events_filter):
        raise TypeError("unexpected payload shape")

    monkeypatch.setattr(reconciler.client, "get_node_health", broken_health)
    snapshot = _poll(reconciler, "N1")
    assert isinstance(snapshot.health_error, TypeError)
    assert snapshot.health is first.health
    assert reconciler.view("N1").stale is True
