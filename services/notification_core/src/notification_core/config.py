from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.enums import CacheTier


class ServiceConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="NOTIFICATION_CORE_")

    log_level: str = "INFO"
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    consumer_poll_timeout_seconds: float = 1.0


class DeliveryConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DELIVERY_")

    failure_threshold: int = 3
    switch_margin: float = 0.10
    min_switch_samples: int = 10
    recovery_timeout_seconds: float = 300.0
    email_batch_size: int = 100
    sms_batch_size: int = 50
    batch_delay_seconds: float = 1.0
    sms_max_length: int = 160
    sms_default_country_code: str = "1"
    daily_cost_alert_threshold: float = 50.0
    email_tracking_base_url: str | None = None

    def batch_size_for_channel(self, channel: str) -> int:
        """Return the bulk batch size for a given channel."""
        sizes = {
            "email": self.email_batch_size,
            "sms": self.sms_batch_size,
        }
        size = sizes.get(channel)
        if size is None:
            raise ValueError(f"No bulk batch size for channel: {channel!r}")
        return size


class RealtimeConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REALTIME_")

    heartbeat_interval_seconds: float = 30.0
    stale_multiplier: float = 2.0
    queue_capacity: int = 100
    queue_retention_seconds: float = 7 * 24 * 60 * 60
    tracking_retention_seconds: float = 24 * 60 * 60
    cleanup_interval_seconds: float = 60 * 60
    broadcast_batch_size: int = 100
    broadcast_batch_delay_seconds: float = 0.1
    replay_batch_size: int = 10
    replay_batch_delay_seconds: float = 0.1


class TierSettings(BaseModel):
    capacity: int
    ttl_seconds: float
    compress: bool = False


class TemplateCacheConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TEMPLATE_CACHE_", env_nested_delimiter="__"
    )

    raw: TierSettings = TierSettings(capacity=500, ttl_seconds=3600, compress=True)
    compiled: TierSettings = TierSettings(capacity=1000, ttl_seconds=7200)
    rendered: TierSettings = TierSettings(capacity=2000, ttl_seconds=300)
    metadata: TierSettings = TierSettings(capacity=100, ttl_seconds=1800)
    enable_metrics: bool = True
    cleanup_interval_seconds: float = 300.0
    metrics_reset_interval_seconds: float = 3600.0
    hit_rate_threshold: float = 0.3
    min_requests_for_health: int = 100
    max_total_bytes: int = 100 * 1024 * 1024

    def tier(self, tier: CacheTier) -> TierSettings:
        return getattr(self, CacheTier(tier).value)
