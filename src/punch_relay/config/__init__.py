from punch_relay.config.settings import PipelineConfig, RUNTIME_KEYS, strtobool

__all__ = ["PipelineConfig", "RUNTIME_KEYS", "strtobool"]
