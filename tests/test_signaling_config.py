import pytest

from signaling_config import SignalingConfig


def test_defaults():
    config = SignalingConfig()
    assert config.id_length == 16
    assert config.timeout == 10_000
    assert config.presence is True
    assert config.secret is None
    assert config.queue_limit is None


def test_from_env_reads_overrides():
    config = SignalingConfig.from_env({
        "SIGNALING_ID_LENGTH": "24",
        "SIGNALING_TIMEOUT": "500",
        "SIGNALING_PRESENCE": "off",
        "SIGNALING_QUEUE_LIMIT": "100",
        "SECRET": "shh",
    })
    assert config.id_length == 24
    assert config.timeout == 500
    assert config.presence is False
    assert config.queue_limit == 100
    assert config.secret == "shh"


def test_from_env_empty_secret_means_none():
    assert SignalingConfig.from_env({"SECRET": ""}).secret is None


def test_from_env_rejects_garbage_boolean():
    with pytest.raises(ValueError):
        SignalingConfig.from_env({"SIGNALING_PRESENCE": "maybe"})


@pytest.mark.parametrize("field, value", [
    ("id_length", 0),
    ("timeout", -1),
    ("queue_limit", 0),
    ("keepalive", 0),
])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValueError):
        SignalingConfig(**{field: value})


def test_with_overrides_skips_unset_flags():
    config = SignalingConfig(timeout=42).with_overrides(timeout=None, presence=False)
    assert config.timeout == 42
    assert config.presence is False
