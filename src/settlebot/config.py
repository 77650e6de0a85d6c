from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from settlebot.domain.models import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="settlebot_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    ledger_backend: str = Field(default="web3", alias="LEDGER_BACKEND")
    rpc_url: str | None = Field(default=None, alias="RPC_URL")
    escrow_address: str | None = Field(default=None, alias="ESCROW_ADDRESS")
    payout_private_key: SecretStr | None = Field(default=None, alias="PAYOUT_PRIVATE_KEY")
    chain_id: int | None = Field(default=None, alias="CHAIN_ID")
    ledger_key_bytes: int = Field(default=32, alias="LEDGER_KEY_BYTES")
    receipt_timeout_seconds: float = Field(default=120.0, alias="RECEIPT_TIMEOUT_SECONDS")
    receipt_poll_seconds: float = Field(default=2.0, alias="RECEIPT_POLL_SECONDS")

    hosting_api_base: str = Field(
        default="https://dathost.net/api/0.1", alias="HOSTING_API_BASE"
    )
    hosting_username: str | None = Field(default=None, alias="HOSTING_USERNAME")
    hosting_password: SecretStr | None = Field(default=None, alias="HOSTING_PASSWORD")
    hosting_timeout_seconds: float = Field(default=10.0, alias="HOSTING_TIMEOUT_SECONDS")

    webhook_secret: SecretStr | None = Field(default=None, alias="WEBHOOK_SECRET")
    webhook_host: str = Field(default="0.0.0.0", alias="WEBHOOK_HOST")
    webhook_port: int = Field(default=8080, alias="WEBHOOK_PORT")

    lock_stale_seconds: int = Field(default=120, alias="LOCK_STALE_SECONDS")
    max_settlement_attempts: int = Field(default=10, alias="MAX_SETTLEMENT_ATTEMPTS")
    janitor_interval_seconds: int = Field(default=30, alias="JANITOR_INTERVAL_SECONDS")
    depositing_grace_seconds: int = Field(default=300, alias="DEPOSITING_GRACE_SECONDS")
    live_grace_seconds: int = Field(default=1200, alias="LIVE_GRACE_SECONDS")

    push_withdraw_enabled: bool = Field(default=True, alias="PUSH_WITHDRAW_ENABLED")
    release_server_on_settle: bool = Field(default=True, alias="RELEASE_SERVER_ON_SETTLE")
    server_end_commands: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["kickall", "css_endmatch"],
        alias="SERVER_END_COMMANDS",
    )

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator("server_end_commands", mode="before")
    def parse_server_end_commands(cls, value: str | list[str] | None) -> list[str]:
        if value is None:
            return []
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError("SERVER_END_COMMANDS JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = list(value)
        return [str(item).strip() for item in items if str(item).strip()]

    @field_validator("ledger_backend")
    def validate_ledger_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"web3", "memory"}:
            raise ValueError("LEDGER_BACKEND must be one of: web3, memory")
        return normalized

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError(
                "OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp, prometheus"
            )
        return normalized

    @field_validator(
        "lock_stale_seconds",
        "max_settlement_attempts",
        "janitor_interval_seconds",
        "ledger_key_bytes",
    )
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator("depositing_grace_seconds", "live_grace_seconds")
    def validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("grace window must be >= 0")
        return value

    @field_validator(
        "receipt_timeout_seconds", "receipt_poll_seconds", "hosting_timeout_seconds"
    )
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("duration must be > 0")
        return value

    def require_ledger_credentials(self) -> None:
        if self.ledger_backend != "web3":
            return
        missing = [
            name
            for name, value in (
                ("RPC_URL", self.rpc_url),
                ("ESCROW_ADDRESS", self.escrow_address),
                ("PAYOUT_PRIVATE_KEY", self.payout_private_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Missing ledger configuration: " + ", ".join(missing)
            )

    def require_webhook_secret(self) -> str:
        if self.webhook_secret is None or not self.webhook_secret.get_secret_value():
            raise ConfigurationError("WEBHOOK_SECRET is required to accept hosting events")
        return self.webhook_secret.get_secret_value()
