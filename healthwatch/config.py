from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Channel definitions (YAML)
    config_path: str = "healthwatch.yaml"

    # SQLite storage
    db_path: str = "data/healthwatch.db"
    retention_days: int = 30
    storage_retry_attempts: int = 3
    storage_busy_timeout_ms: int = 250  # per attempt; writes block the event loop while waiting

    # Channel defaults (overridden by the YAML `defaults` block, then per channel)
    default_interval_sec: float = 60.0
    default_timeout_ms: int = 3000
    default_threshold: int = 3
    default_jitter_pct: float = 10.0

    # Backoff while offline: interval * multiplier**step, capped
    backoff_multiplier: float = 2.0
    backoff_max_factor: float = 10.0
    backoff_max_interval_sec: float = 0.0  # 0 = no absolute cap

    # Probes
    probe_grace_ms: int = 500  # extra wait past timeout before a probe counts as hung
    script_probes_enabled: bool = False
    http_user_agent: str = "healthwatch/0.1"

    # Watch sessions: default probe interval while a channel is watched
    watch_interval_sec: float = 15.0

    # Guards
    guard_cache_ttl_sec: float = 30.0

    # Whether guard-skipped samples update `last_sample` on the channel state
    count_skipped_in_recency: bool = False

    # Notifications (outage opened / closed)
    slack_webhook_url: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
