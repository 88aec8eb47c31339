import pytest

from punch_relay.config import PipelineConfig, RUNTIME_KEYS, strtobool
from punch_relay.exceptions import ConfigError


def test_defaults():
    config = PipelineConfig.from_env({})

    assert config.device_port == 4370
    assert config.queue_capacity == 500
    assert config.max_concurrent == 5
    assert config.max_retries == 3
    assert config.link_cooldown == 60.0
    assert config.sink_payload_shapes == ["canonical", "snake_case", "legacy_flat"]


def test_reads_environment_values():
    config = PipelineConfig.from_env(
        {
            "DEVICE_IP": "10.1.1.9",
            "DEVICE_PORT": "4371",
            "DEVICE_FORCE_UDP": "yes",
            "RETRY_BASE_DELAY": "0.5",
            "SINK_PAYLOAD_SHAPES": "legacy_flat, canonical",
            "POLL_BACKFILL": "false",
            "QUEUE_CAPACITY": "",
        }
    )

    assert config.device_ip == "10.1.1.9"
    assert config.device_port == 4371
    assert config.device_force_udp is True
    assert config.retry_base_delay == 0.5
    assert config.sink_payload_shapes == ["legacy_flat", "canonical"]
    assert config.poll_backfill is False
    assert config.queue_capacity == 500


@pytest.mark.parametrize(
    "environ",
    [{"QUEUE_CAPACITY": "0"}, {"MAX_RETRIES": "-1"}, {"DEVICE_PORT": "abc"}, {"DEVICE_FORCE_UDP": "maybe"}],
)
def test_invalid_environment_is_rejected(environ):
    with pytest.raises(ConfigError):
        PipelineConfig.from_env(environ)


def test_apply_updates_is_all_or_nothing():
    config = PipelineConfig()

    with pytest.raises(ConfigError):
        config.apply_updates({"max_concurrent": 2, "batch_size": 0})
    with pytest.raises(ConfigError):
        config.apply_updates({"max_concurrent": 2, "device_ip": "1.2.3.4"})

    assert config.max_concurrent == 5
    assert config.batch_size == 10


def test_apply_updates_coerces_values():
    config = PipelineConfig()

    applied = config.apply_updates({"max_concurrent": "8", "retry_base_delay": 2})

    assert applied == {"max_concurrent": 8, "retry_base_delay": 2.0}
    assert config.max_concurrent == 8


@pytest.mark.parametrize("partial", [{}, [], {"max_retries": True}, {"batch_size": 1.5}])
def test_apply_updates_rejects_bad_input(partial):
    with pytest.raises(ConfigError):
        PipelineConfig().apply_updates(partial)


def test_runtime_keys_are_fields():
    config = PipelineConfig()
    assert all(hasattr(config, key) for key in RUNTIME_KEYS)


def test_to_dict_redacts_api_key():
    assert PipelineConfig(sink_api_key="secret").to_dict()["sink_api_key"] == "***"


def test_strtobool():
    assert strtobool("On") == 1
    assert strtobool("0") == 0
    with pytest.raises(ValueError):
        strtobool("perhaps")
