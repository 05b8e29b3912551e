"""Load test configuration via environment variables."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

from chainload.engine.models import EngineConfig


class Settings(BaseSettings):
    app_name: str = "chainload"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    log_json: bool = False

    # Target chain
    base_endpoint: str = Field(
        default="https://archive.sei.hellomoon.io",
        validation_alias=AliasChoices("SEI_RPC_ENDPOINT", "BASE_ENDPOINT"),
    )
    evm_endpoint: str = Field(
        default="",
        validation_alias=AliasChoices("SEI_EVM_ENDPOINT", "EVM_ENDPOINT"),
    )
    auth_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SEI_AUTH_TOKEN", "AUTH_TOKEN"),
    )

    # Load shape
    concurrency: int = Field(
        default=5,
        gt=0,
        validation_alias=AliasChoices("TEST_CONCURRENCY", "CONCURRENCY"),
    )
    max_requests_per_second: int = Field(default=10, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=100, gt=0)
    batch_pause_seconds: float = Field(default=0.1, ge=0)
    warmup_requests: int = Field(default=10, ge=0)

    # Discovery
    block_window: int = Field(default=10, gt=0)

    # Rate-limit backpressure
    rate_limit_window_ms: int = Field(default=60000, gt=0)
    rate_limit_threshold: int = Field(default=10, ge=0)
    rate_limit_cooldown_seconds: float = Field(default=1.0, ge=0)

    report_dir: str = "reports"

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def engine_config(self) -> EngineConfig:
        """Project settings onto the engine's plain config object."""
        return EngineConfig(
            base_endpoint=self.base_endpoint,
            evm_endpoint=self.evm_endpoint or self.base_endpoint,
            auth_token=self.auth_token,
            concurrency=self.concurrency,
            max_requests_per_second=self.max_requests_per_second,
            request_timeout_seconds=self.request_timeout_seconds,
            batch_size=self.batch_size,
            batch_pause_seconds=self.batch_pause_seconds,
            warmup_requests=self.warmup_requests,
            block_window=self.block_window,
            rate_limit_window_ms=self.rate_limit_window_ms,
            rate_limit_threshold=self.rate_limit_threshold,
            rate_limit_cooldown_seconds=self.rate_limit_cooldown_seconds,
        )


settings = Settings()
