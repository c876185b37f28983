import hashlib
import hmac
from datetime import date

import pytest

from core.config import settings
from core.exceptions import AdminAuthError
from core.security import (
    check_operator_password,
    generate_admin_token,
    require_admin_token,
    verify_admin_token,
)


@pytest.fixture
def admin_secrets(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_KEY", "unit-test-secret")
    monkeypatch.setattr(settings, "MIGRATION_AUTH_KEY", "operator-password")


def test_token_is_hmac_of_utc_date(admin_secrets):
    day = date(2024, 3, 15)
    expected = hmac.new(b"unit-test-secret", b"2024-03-15", hashlib.sha256).hexdigest()
    assert generate_admin_token(day=day) == expected


def test_tokens_rotate_daily(admin_secrets):
    assert generate_admin_token(day=date(2024, 3, 15)) != generate_admin_token(day=date(2024, 3, 16))


def test_verify_accepts_todays_token(admin_secrets):
    assert verify_admin_token(generate_admin_token())


def test_verify_rejects_yesterdays_token(admin_secrets):
    old = generate_admin_token(day=date(2000, 1, 1))
    assert not verify_admin_token(old)


@pytest.mark.parametrize("token", [None, "", "not-a-token", "ñandú"])
def test_verify_rejects_garbage(admin_secrets, token):
    assert not verify_admin_token(token)


def test_missing_secret_rejects_everything(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_KEY", None)
    assert not verify_admin_token("anything")
    with pytest.raises(AdminAuthError):
        generate_admin_token()


def test_require_admin_token(admin_secrets):
    require_admin_token(generate_admin_token())
    with pytest.raises(AdminAuthError):
        require_admin_token("wrong")


def test_operator_password(admin_secrets):
    assert check_operator_password("operator-password")
    assert not check_operator_password("guess")
    assert not check_operator_password(None)
