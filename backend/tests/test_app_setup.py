import logging

from fastapi.testclient import TestClient

from marketplace.core.config import Settings
from marketplace.main import app
from marketplace.models import Booking, BookingStatus


def test_healthz():
    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}


def test_cors_origins_from_json_list(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", '["https://a.example", "https://b.example"]')
    settings = Settings(_env_file=None)
    assert settings.CORS_ORIGINS == ["https://a.example", "https://b.example"]


def test_cors_allow_all(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ALL", "true")
    assert Settings(_env_file=None).CORS_ORIGINS == ["*"]


def test_currency_and_stripe_key_are_normalised(monkeypatch):
    monkeypatch.setenv("DEFAULT_CURRENCY", " USD ")
    monkeypatch.setenv("STRIPE_SECRET_KEY", " sk_test_abc\n")
    settings = Settings(_env_file=None)
    assert settings.DEFAULT_CURRENCY == "usd"
    assert settings.STRIPE_SECRET_KEY == "sk_test_abc"


def test_status_assignment_is_logged(caplog):
    caplog.set_level(logging.INFO, logger="marketplace.utils.status_logger")
    booking = Booking(status=BookingStatus.PENDING)
    booking.status = BookingStatus.DECLINED
    assert any("from pending to declined" in r.getMessage() for r in caplog.records)
