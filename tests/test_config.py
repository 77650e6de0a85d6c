from __future__ import annotations

from pathlib import Path

import pytest

from settlebot.config import Settings
from settlebot.domain.models import ConfigurationError


def test_defaults() -> None:
    settings = Settings()

    assert settings.ledger_backend == "web3"
    assert settings.lock_stale_seconds == 120
    assert settings.max_settlement_attempts == 10
    assert settings.depositing_grace_seconds == 300
    assert settings.live_grace_seconds == 1200
    assert settings.ledger_key_bytes == 32
    assert settings.server_end_commands == ["kickall", "css_endmatch"]
    assert settings.state_db_path.endswith("settlebot-test.sqlite")


def test_parse_server_end_commands_csv() -> None:
    settings = Settings(SERVER_END_COMMANDS="kickall, css_endmatch ,,say gg")
    assert settings.server_end_commands == ["kickall", "css_endmatch", "say gg"]


def test_parse_server_end_commands_json_list(monkeypatch) -> None:
    monkeypatch.setenv("SERVER_END_COMMANDS", '["kickall", "mp_restartgame 1"]')
    assert Settings().server_end_commands == ["kickall", "mp_restartgame 1"]


def test_empty_server_end_commands_disable_wind_down() -> None:
    assert Settings(SERVER_END_COMMANDS="").server_end_commands == []


def test_loads_values_from_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env.ops"
    env_file.write_text(
        "\n".join(
            [
                "LEDGER_BACKEND=memory",
                "LOCK_STALE_SECONDS=45",
                "WEBHOOK_SECRET=from-file",
                "PUSH_WITHDRAW_ENABLED=false",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    settings = Settings(_env_file=str(env_file))

    assert settings.ledger_backend == "memory"
    assert settings.lock_stale_seconds == 45
    assert settings.push_withdraw_enabled is False
    assert settings.require_webhook_secret() == "from-file"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("LOCK_STALE_SECONDS", 0),
        ("MAX_SETTLEMENT_ATTEMPTS", 0),
        ("JANITOR_INTERVAL_SECONDS", -5),
        ("DEPOSITING_GRACE_SECONDS", -1),
        ("RECEIPT_TIMEOUT_SECONDS", 0),
        ("LEDGER_KEY_BYTES", 0),
        ("LEDGER_BACKEND", "postgres"),
        ("OBSERVABILITY_METRICS_EXPORTER", "statsd"),
    ],
)
def test_invalid_settings_raise(field: str, value: object) -> None:
    with pytest.raises(ValueError):
        Settings(**{field: value})


def test_secrets_are_not_exposed_in_repr() -> None:
    settings = Settings(PAYOUT_PRIVATE_KEY="0x" + "11" * 32, WEBHOOK_SECRET="shh-secret")

    assert "11" * 32 not in repr(settings)
    assert "shh-secret" not in repr(settings)


def test_web3_backend_requires_ledger_credentials() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Settings(RPC_URL="http://localhost:8545").require_ledger_credentials()

    assert "ESCROW_ADDRESS" in str(exc_info.value)
    assert "PAYOUT_PRIVATE_KEY" in str(exc_info.value)
    assert "RPC_URL" not in str(exc_info.value)


def test_memory_backend_needs_no_ledger_credentials() -> None:
    Settings(LEDGER_BACKEND="MEMORY").require_ledger_credentials()


def test_missing_webhook_secret_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        Settings().require_webhook_secret()
