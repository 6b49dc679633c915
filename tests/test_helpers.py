import base64
from datetime import datetime, timezone

import pytest

from payflow.errors import ValidationError
from payflow.helpers import normalize_phone_number, normalize_transaction_code, whole_amount
from payflow.security import compute_password, generate_timestamp


@pytest.mark.parametrize("raw", ["254712345678", "+254712345678", "0712345678", "712345678", "254 712-345-678", 254712345678])
def test_phone_normalization(raw):
    assert normalize_phone_number(raw) == "254712345678"


def test_phone_normalization_accepts_01_prefix():
    assert normalize_phone_number("0110123456") == "254110123456"


@pytest.mark.parametrize("raw", [None, "", "12345", "255712345678", "2547123456789", "0812345678"])
def test_phone_normalization_rejects(raw):
    with pytest.raises(ValidationError):
        normalize_phone_number(raw)


def test_amount_rounds_up_and_rejects_non_positive():
    assert whole_amount(1) == 1
    assert whole_amount(0.01) == 1
    assert whole_amount("299.5") == 300
    for bad in (0, -1, "abc", None, float("nan"), True):
        with pytest.raises(ValidationError):
            whole_amount(bad)


def test_transaction_code_normalization():
    assert normalize_transaction_code(" qgh7x9k2m1 ") == "QGH7X9K2M1"
    for bad in ("", None, "QGH-7X9", "SHORT", "A" * 13):
        with pytest.raises(ValidationError):
            normalize_transaction_code(bad)


def test_timestamp_is_kenyan_local_time():
    moment = datetime(2026, 10, 19, 21, 30, 5, tzinfo=timezone.utc)
    assert generate_timestamp(moment) == "20261020003005"


def test_password_is_base64_of_shortcode_passkey_timestamp():
    password = compute_password("20261019103000", short_code="174379", passkey="bfb279f9")
    assert base64.b64decode(password) == b"174379bfb279f920261019103000"


def test_settings_require_provider_credentials(monkeypatch):
    from pydantic import ValidationError as SchemaError

    from payflow.config import Settings

    monkeypatch.delenv("MPESA_PASSKEY")
    with pytest.raises(SchemaError):
        Settings(_env_file=None)


def test_suite_database_is_disposable(disposable_database):
    import payflow.database as database

    assert database.engine is disposable_database
    assert database.engine.url.database.endswith("test.db")
    assert database.SessionLocal.kw["bind"] is disposable_database
