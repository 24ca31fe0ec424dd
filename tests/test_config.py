import json
import os

import pytest

from goxic.config import (
    Config,
    ConfigError,
    SelectionStrategy,
    default_config,
    load_config,
)

BOOT = "/ip4/104.131.131.82/tcp/4001/p2p/QmaCpDMGvV2BGHeYERUEnRQAwe3N8SzbUtfsmvsqQLuvuJ"


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


def test_default_values():
    config = default_config()
    assert config.network.port == 4001
    assert config.network.name == "goxic-proxy"
    assert config.socks5.port == 1080
    assert config.discovery.selection_strategy == SelectionStrategy.LOAD_BALANCE
    assert config.is_client_mode()


def test_load_minimal_applies_defaults(tmp_path):
    path = _write(tmp_path, {"network": {"boostrapNodes": [BOOT]}})
    config = load_config(path)
    assert config.network.port == default_config().network.port
    assert config.socks5.enabled is True
    assert os.path.isabs(config.data_dir)
    assert config.network.bootstrap_nodes == [BOOT]


def test_server_mode_disables_socks(tmp_path):
    path = _write(tmp_path, {"mode": "server", "socks5": {"enabled": True},
                             "network": {"boostrapNodes": [BOOT]}})
    config = load_config(path)
    assert config.socks5.enabled is False
    assert config.is_server_mode()


def test_missing_bootstrap_nodes(tmp_path):
    with pytest.raises(ConfigError, match="boostrapNodes"):
        load_config(_write(tmp_path, {}))


def test_invalid_mode(tmp_path):
    with pytest.raises(ConfigError, match="invalid mode"):
        load_config(_write(tmp_path, {"mode": "relay", "network": {"boostrapNodes": [BOOT]}}))


def test_bad_json(tmp_path):
    path = tmp_path / "c.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.json")


def test_log_level_normalised():
    config = default_config()
    config.network.bootstrap_nodes = [BOOT]
    config.logging.level = "DEBUG"
    config.validate()
    assert config.logging.level == "debug"


@pytest.mark.parametrize("attr,section,value,match", [
    ("port", "network", 80, "network.port"),
    ("bind_address", "socks5", "localhost", "bindAddress"),
    ("allowed_networks", "socks5", ["10.0.0.1"], "allowed network"),
    ("format", "logging", "xml", "logging.format"),
    ("selection_strategy", "discovery", "fastest", "selectionStrategy"),
])
def test_validation_errors(attr, section, value, match):
    config = default_config()
    config.network.bootstrap_nodes = [BOOT]
    setattr(getattr(config, section), attr, value)
    with pytest.raises(ConfigError, match=match):
        config.validate()


def test_min_greater_than_max():
    config = default_config()
    config.network.bootstrap_nodes = [BOOT]
    config.network.min_connections = config.network.max_connections + 1
    with pytest.raises(ConfigError, match="minConnections"):
        config.validate()


def test_preferred_requires_nodes():
    config = default_config()
    config.network.bootstrap_nodes = [BOOT]
    config.discovery.selection_strategy = SelectionStrategy.PREFERRED.value
    with pytest.raises(ConfigError, match="preferredExitNodes"):
        config.validate()


def test_wrong_type_rejected():
    with pytest.raises(ConfigError):
        Config.from_dict({"network": {"port": "4001"}})


def test_save_and_load_round_trip(tmp_path):
    config = default_config()
    config.network.bootstrap_nodes = [BOOT]
    path = tmp_path / "sub" / "config.json"
    config.save(path)
    loaded = load_config(path)
    assert loaded.network == config.network
    assert loaded.discovery == config.discovery
    assert json.loads(path.read_text())["network"]["boostrapNodes"] == [BOOT]


def test_dict_round_trip():
    config = default_config()
    assert Config.from_dict(config.to_dict()) == config


def test_data_path():
    config = default_config()
    assert config.data_path("priv.key") == os.path.join("./data", "priv.key")