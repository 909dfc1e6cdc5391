import pytest

from hue_lan_client.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    load_config,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.ssdp_service_type == "upnp:rootdevice"
    assert config.max_bridge_age == 5
    assert config.max_subscribed_age == 100
    assert config.max_bridge_errors == 2
    assert config.flush_interval == 0.2


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("discovery_interval", 0.0, "discovery_interval"),
        ("ssdp_port", 0, "ssdp_port"),
        ("max_bridge_errors", -1, "max_bridge_errors"),
        ("request_timeout", 500.0, "request_timeout"),
        ("flush_interval", -0.1, "flush_interval"),
        ("log_format", "xml", "log_format"),
        ("requests_log_level", "chatty", "requests_log_level"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_logging_dict_masks_secrets() -> None:
    config = Config(username="secret-user")
    logged = config.logging_dict()
    assert logged["username"] == "***"
    assert logged["discovery_interval"] == config.discovery_interval


def test_file_then_overrides(tmp_path) -> None:
    path = tmp_path / "hue.toml"
    path.write_text(
        'discovery-interval = 30\nmax_bridge_age = "7"\nlog_level = "debug"\n',
        encoding="utf-8",
    )
    config = load_config(path, {"discovery_interval": "45", "flush_interval": None})
    assert config.discovery_interval == 45.0
    assert config.max_bridge_age == 7
    assert config.log_level == "DEBUG"
    assert config.flush_interval == 0.2


def test_unknown_keys_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown configuration key"):
        load_config(overrides={"api_key": "x"})


def test_missing_file_reported(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")
