import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str

    storage_backend: str
    storage_base_path: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_webhook_enabled: bool
    billing_mode: str

    smtp_server: str
    smtp_port: str
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str

    redis_url: str
    background_jobs_enabled: bool

    ratelimit_storage_uri: str
    ratelimit_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: str = "0") -> bool:
    return _getenv(name, default).lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    env = _getenv("ENV", "development")
    redis_url = _getenv("REDIS_URL", "")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///saaskit.db"),
        app_url=_getenv("APP_URL", "http://localhost:8080").rstrip("/"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_base_path=_getenv("STORAGE_BASE_PATH", "prod" if env in ("prod", "production") else "dev"),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_webhook_enabled=_getflag("STRIPE_WEBHOOK_ENABLED", "1"),
        billing_mode=_getenv("BILLING_MODE", "ORGANIZATION").upper(),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv("SMTP_PORT", "587"),
        smtp_use_tls=_getflag("SMTP_USE_TLS", "1"),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", "no-reply@saaskit.local"),
        redis_url=redis_url,
        background_jobs_enabled=_getflag("BACKGROUND_JOBS_ENABLED", "1" if redis_url else "0"),
        ratelimit_storage_uri=_getenv("RATELIMIT_STORAGE_URI", "memory://"),
        ratelimit_enabled=_getflag("RATELIMIT_ENABLED", "1"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_BASE_PATH": s.storage_base_path,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "STRIPE_SECRET_KEY": s.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        "STRIPE_WEBHOOK_ENABLED": s.stripe_webhook_enabled,
        "BILLING_MODE": s.billing_mode,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        "REDIS_URL": s.redis_url,
        "BACKGROUND_JOBS_ENABLED": s.background_jobs_enabled,
        # Flask-Limiter reads these keys directly
        "RATELIMIT_STORAGE_URI": s.ratelimit_storage_uri,
        "RATELIMIT_ENABLED": s.ratelimit_enabled,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request cap; per-file limits are enforced by the files service
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
