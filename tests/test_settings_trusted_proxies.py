import ipaddress

import pytest
from pydantic import ValidationError

from intake.app.core.config import Settings


def test_trusted_proxies_accepts_plain_list(monkeypatch) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8, 192.168.1.1")

    settings = Settings(_env_file=None)
    assert settings.trusted_proxies == ["10.0.0.0/8", "192.168.1.1/32"]
    assert ipaddress.ip_address("10.20.30.40") in settings.trusted_proxy_networks[0]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["10.0.0.1"]', ["10.0.0.1/32"]),
        ("::1", ["::1/128"]),
        ("172.16.0.1/12", ["172.16.0.0/12"]),
        ("10.0.0.1 10.0.0.1", ["10.0.0.1/32"]),
        ("[]", []),
        ("", []),
    ],
)
def test_trusted_proxies_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", raw)

    settings = Settings(_env_file=None)
    assert settings.trusted_proxies == expected


def test_invalid_trusted_proxy_fails_validation(monkeypatch) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8,not-an-ip")

    with pytest.raises(ValidationError, match="invalid TRUSTED_PROXIES entry"):
        Settings(_env_file=None)


def test_defaults() -> None:
    settings = Settings(_env_file=None)
    assert settings.rate_limit_rps == 10
    assert settings.rate_limit_burst == 20
    assert settings.rate_limit_key_ttl_seconds == 300
    assert settings.queue_max_retry == 5
    assert settings.queue_poll_timeout_seconds == 5
    assert settings.worker_concurrency == 10
    assert settings.worker_shutdown_timeout_seconds == 10
    assert settings.rate_limit_fail_closed is False


@pytest.mark.parametrize(
    ("env", "value"),
    [
        ("RATE_LIMIT_RPS", "0"),
        ("QUEUE_MAX_RETRY", "0"),
        ("WORKER_CONCURRENCY", "0"),
        ("QUEUE_POLL_TIMEOUT_SECONDS", "-1"),
        ("EMBEDDED_WORKER_CONCURRENCY", "-1"),
    ],
)
def test_rejects_out_of_range_values(monkeypatch, env: str, value: str) -> None:
    monkeypatch.setenv(env, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
