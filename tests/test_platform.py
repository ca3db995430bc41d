import logging

import pytest
from flask import Flask

from app.saaskit import create_app, jobs
from app.saaskit.config import load_config, load_settings
from app.saaskit.dal import request_cached
from app.saaskit.errors import AuthorizationError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.mailer import send_email, welcome_follow_up_message


# ---------- Config ----------
def test_settings_defaults(monkeypatch):
    for name in ("ENV", "REDIS_URL", "BACKGROUND_JOBS_ENABLED", "BILLING_MODE", "STORAGE_BASE_PATH", "APP_URL"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.env == "development"
    assert s.billing_mode == "ORGANIZATION"
    assert s.storage_base_path == "dev"
    assert s.background_jobs_enabled is False
    assert s.app_url == "http://localhost:8080"


def test_production_config_with_redis(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("APP_URL", "https://app.example.com/")
    monkeypatch.delenv("BACKGROUND_JOBS_ENABLED", raising=False)
    monkeypatch.delenv("STORAGE_BASE_PATH", raising=False)
    config = load_config()
    assert config["BACKGROUND_JOBS_ENABLED"] is True
    assert config["STORAGE_BASE_PATH"] == "prod"
    assert config["SESSION_COOKIE_SECURE"] is True
    assert config["APP_URL"] == "https://app.example.com"


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"DATABASE_URL": "sqlite:///prod.db", "SECRET_KEY": "s3cret"}, "Postgres"),
        ({"DATABASE_URL": "postgresql://u:p@db/saaskit", "SECRET_KEY": "change-me"}, "SECRET_KEY"),
        (
            {"DATABASE_URL": "postgresql://u:p@db/saaskit", "SECRET_KEY": "s3cret", "STRIPE_WEBHOOK_ENABLED": True, "STRIPE_WEBHOOK_SECRET": ""},
            "STRIPE_WEBHOOK_SECRET",
        ),
    ],
)
def test_production_guardrails(overrides, message):
    with pytest.raises(RuntimeError, match=message):
        create_app({"ENV": "production", **overrides})


# ---------- Mailer ----------
def test_send_email_without_smtp_only_logs(caplog):
    with caplog.at_level(logging.INFO):
        ok, detail = send_email({"SMTP_SERVER": ""}, "jane@example.com", "Hi", "Body")
    assert (ok, detail) == (True, "logged")
    assert "jane@example.com" in caplog.text


def test_send_email_requires_sender():
    assert send_email({"SMTP_SERVER": "smtp.example.com", "EMAIL_FROM": ""}, "a@b.c", "Hi", "Body") == (
        False,
        "Email from address not configured",
    )


def test_welcome_follow_up_message_falls_back_to_french():
    subject, body = welcome_follow_up_message("Jane", "https://app.example.com", "en")
    assert subject == "How is it going, Jane?"
    assert "https://app.example.com/dashboard" in body
    assert welcome_follow_up_message("Jane", "", "de")[0] == "Comment ça se passe, Jane ?"


# ---------- Jobs ----------
def test_welcome_follow_up_task_sends(monkeypatch):
    monkeypatch.delenv("SMTP_SERVER", raising=False)
    result = jobs.send_welcome_follow_up_email(user_id=7, email="jane@example.com", name="Jane", language="en")
    assert result == {"success": True, "user_id": 7, "email_sent": True}


def test_welcome_follow_up_task_retries_on_failure(monkeypatch):
    monkeypatch.setattr(jobs, "send_email", lambda *a, **kw: (False, "smtp down"))
    with pytest.raises(RuntimeError, match="smtp down"):
        jobs.send_welcome_follow_up_email(user_id=7, email="jane@example.com", name="Jane")


class _User:
    id = 3
    email = "jane@example.com"
    display_name = "Jane"


def test_schedule_welcome_follow_up(monkeypatch):
    queued = []

    class FakeTask:
        @staticmethod
        def apply_async(**kwargs):
            queued.append(kwargs)

    monkeypatch.setattr(jobs, "send_welcome_follow_up_email", FakeTask)
    app = Flask(__name__)

    app.config["BACKGROUND_JOBS_ENABLED"] = False
    assert jobs.schedule_welcome_follow_up(app, _User()) is False
    assert queued == []

    app.config["BACKGROUND_JOBS_ENABLED"] = True
    assert jobs.schedule_welcome_follow_up(app, _User(), "en") is True
    assert queued == [
        {
            "kwargs": {"user_id": 3, "email": "jane@example.com", "name": "Jane", "language": "en"},
            "countdown": jobs.WELCOME_FOLLOW_UP_DELAY,
        }
    ]


def test_schedule_welcome_follow_up_swallows_broker_errors(monkeypatch):
    class BrokenTask:
        @staticmethod
        def apply_async(**kwargs):
            raise ConnectionError("broker unreachable")

    monkeypatch.setattr(jobs, "send_welcome_follow_up_email", BrokenTask)
    app = Flask(__name__)
    app.config["BACKGROUND_JOBS_ENABLED"] = True
    assert jobs.schedule_welcome_follow_up(app, _User()) is False


# ---------- Facades ----------
def test_logged_service_logs_and_reraises(caplog):
    @logged_service("demo")
    def deny():
        raise AuthorizationError("nope")

    @logged_service("demo")
    def reject():
        raise ValidationError(["bad field"])

    @logged_service("demo")
    def explode():
        raise KeyError("boom")

    with caplog.at_level(logging.DEBUG, logger="saaskit.services"):
        with pytest.raises(AuthorizationError):
            deny()
        with pytest.raises(ValidationError):
            reject()
        with pytest.raises(KeyError):
            explode()

    levels = {r.getMessage().split(" ")[0]: r.levelname for r in caplog.records if not r.getMessage().startswith("->")}
    assert levels == {"demo.deny": "ERROR", "demo.reject": "WARNING", "demo.explode": "ERROR"}
    assert any(r.exc_info for r in caplog.records if r.getMessage().startswith("demo.explode"))
    assert not any(r.exc_info for r in caplog.records if r.getMessage().startswith("demo.deny"))


def test_logged_service_passes_results_through():
    @logged_service("demo")
    def add(a, b=0):
        return a + b

    assert add(1, b=2) == 3
    assert add.__name__ == "add"


# ---------- Request-memoized DAL ----------
def test_request_cached_memoizes_per_request():
    calls = []

    @request_cached
    def lookup(key, flag=False):
        calls.append((key, flag))
        return len(calls)

    app = Flask(__name__)
    with app.test_request_context("/"):
        assert lookup("a") == 1
        assert lookup("a") == 1
        assert lookup("a", flag=True) == 2
        assert lookup("b") == 3
    with app.test_request_context("/"):
        assert lookup("a") == 4
    assert calls == [("a", False), ("a", True), ("b", False), ("a", False)]
