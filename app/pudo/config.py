import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # Pickup policy
    storage_grace_days: int
    storage_warning_days: int
    otp_length: int
    otp_valid_minutes: int
    otp_max_attempts: int
    otp_supersede_previous: bool

    # QR check-in
    qr_service_url: str
    qr_placeholder_base64: str
    qr_http_timeout: int

    # Notifications
    notify_backend: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_from: str
    smtp_use_tls: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pudo.db"),
        app_url=_getenv("APP_URL", "").rstrip("/"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        storage_grace_days=_getenv_int("PICKUP_STORAGE_GRACE_DAYS", 15),
        storage_warning_days=_getenv_int("PICKUP_STORAGE_WARNING_DAYS", 3),
        otp_length=_getenv_int("PICKUP_OTP_LENGTH", 6),
        otp_valid_minutes=_getenv_int("PICKUP_OTP_VALID_MINUTES", 1440),
        otp_max_attempts=_getenv_int("PICKUP_OTP_MAX_ATTEMPTS", 5),
        otp_supersede_previous=_getenv_bool("PICKUP_OTP_SUPERSEDE_PREVIOUS", False),
        qr_service_url=_getenv("PICKUP_QR_SERVICE_URL", ""),
        qr_placeholder_base64=_getenv("PICKUP_QR_PLACEHOLDER_BASE64", ""),
        qr_http_timeout=_getenv_int("PICKUP_QR_HTTP_TIMEOUT", 6),
        notify_backend=_getenv("NOTIFY_BACKEND", "log"),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_from=_getenv("SMTP_FROM", ""),
        smtp_use_tls=_getenv_bool("SMTP_USE_TLS", True),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "PICKUP_STORAGE_GRACE_DAYS": s.storage_grace_days,
        "PICKUP_STORAGE_WARNING_DAYS": s.storage_warning_days,
        "PICKUP_OTP_LENGTH": s.otp_length,
        "PICKUP_OTP_VALID_MINUTES": s.otp_valid_minutes,
        "PICKUP_OTP_MAX_ATTEMPTS": s.otp_max_attempts,
        "PICKUP_OTP_SUPERSEDE_PREVIOUS": s.otp_supersede_previous,
        "PICKUP_QR_SERVICE_URL": s.qr_service_url,
        "PICKUP_QR_PLACEHOLDER_BASE64": s.qr_placeholder_base64,
        "PICKUP_QR_HTTP_TIMEOUT": s.qr_http_timeout,
        "NOTIFY_BACKEND": s.notify_backend,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_FROM": s.smtp_from,
        "SMTP_USE_TLS": s.smtp_use_tls,
        # JSON API only; keep payloads small
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
    }
