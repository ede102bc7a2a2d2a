import pytest

from nodectl.config import ReconcilerConfig, load_config
from nodectl.errors import ConfigurationError
from nodectl.state import HealthStateFilterFlags


def test_defaults_without_file(tmp_path):
    config = load_config(env={"NODECTL_CONFIG": str(tmp_path / "missing.yaml")})
    assert config == ReconcilerConfig()
    assert config.events_filter == HealthStateFilterFlags.DEFAULT


def test_yaml_then_env_then_overrides(tmp_path):
    path = tmp_path / "nodectl.yaml"
    path.write_text(
        "reconciler:\n"
        "  controller_url: http://cluster:19080\n"
        "  poll_interval_s: 30\n"
        "  nodes: [_Node_0, _Node_1]\n"
        "  advanced_actions_enabled: false\n"
    )
    env = {"NODECTL_POLL_INTERVAL_S": "5", "NODECTL_EVENTS_FILTER": "12"}
    config = load_config(str(path), env=env, request_timeout_s=3, api_version=None)

    assert config.controller_url == "http://cluster:19080"
    assert config.poll_interval_s == 5.0
    assert config.request_timeout_s == 3.0
    assert config.api_version == "6.0"
    assert config.nodes == ["_Node_0", "_Node_1"]
    assert config.advanced_actions_enabled is False
    assert config.events_filter == HealthStateFilterFlags.WARNING | HealthStateFilterFlags.ERROR


def test_env_node_list_and_booleans():
    env = {"NODECTL_NODES": "a, b,,c", "NODECTL_VERIFY_TLS": "no", "NODECTL_CONFIG": "/nonexistent/x.yaml"}
    config = load_config(env=env)
    assert config.nodes == ["a", "b", "c"]
    assert config.verify_tls is False


def test_explicit_missing_file_is_an_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "nope.yaml"), env={})


def test_unknown_key_is_an_error(tmp_path):
    path = tmp_path / "nodectl.yaml"
    path.write_text("controler_url: http://typo\n")
    with pytest.raises(ConfigurationError):
        load_config(str(path), env={})


@pytest.mark.parametrize(
    "env",
    [
        {"NODECTL_TIMEOUT_S": "soon"},
        {"NODECTL_TIMEOUT_S": "0"},
        {"NODECTL_ADVANCED_ACTIONS": "maybe"},
        {"NODECTL_MAX_WORKERS": "0"},
    ],
)
def test_invalid_values(env):
    env = dict(env, NODECTL_CONFIG="/nonexistent/x.yaml")
    with pytest.raises(ConfigurationError):
        load_config(env=env)
