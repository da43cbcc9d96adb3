"""Unit tests for auditchain.config.settings."""
import pytest
from pydantic import ValidationError

from auditchain.config.settings import Environment, Settings, VerifyMode, is_weak_secret

TOKEN = "operator-token-for-tests-only-0123456789"


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.verify_mode == VerifyMode.FIRST_BREAK
    assert settings.append_timeout_seconds == 5.0
    assert settings.audit_secret is None
    assert settings.operator_token is None


def test_cors_origins_from_comma_separated_string():
    settings = Settings(_env_file=None, cors_origins="http://a.test, http://b.test")
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


@pytest.mark.parametrize(
    "secret",
    ["CHANGE-THIS-AUDIT-SECRET-IN-PRODUCTION", "default-audit-secret-CHANGE-IN-PRODUCTION", "x" * 10],
)
def test_weak_audit_secret_rejected(secret):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, audit_secret=secret)


def test_strong_audit_secret_kept_secret():
    settings = Settings(_env_file=None, audit_secret="s" * 40)
    assert settings.audit_secret.get_secret_value() == "s" * 40
    assert "s" * 40 not in repr(settings)


def test_short_operator_token_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, operator_token="too-short")


def test_production_requires_operator_token():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, environment=Environment.PRODUCTION)
    Settings(_env_file=None, environment=Environment.PRODUCTION, operator_token=TOKEN)


def test_production_rejects_debug():
    with pytest.raises(ValidationError):
        Settings(
            _env_file=None, environment=Environment.PRODUCTION, operator_token=TOKEN, debug=True
        )


def test_unknown_field_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, not_a_setting=True)


@pytest.mark.parametrize(
    "value,weak",
    [(None, True), ("", True), ("changeme", True), ("a" * 31, True), ("a" * 32, False)],
)
def test_is_weak_secret(value, weak):
    assert is_weak_secret(value) is weak
