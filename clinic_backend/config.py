from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# SQLite file in the project root by default
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "clinic_backend.sqlite"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, read from the environment (.env supported).
    Policy numbers (TTL, attempts, lockout) are defaults, not requirements.
    """
    database_url: str
    jwt_secret: str
    jwt_2fa_secret: str
    jwt_refresh_secret: str
    jwt_alg: str
    access_token_expire_minutes: int
    refresh_token_expire_days: int

    preauth_ttl_seconds: int
    preauth_max_attempts: int
    totp_valid_window: int
    totp_issuer: str
    email_code_ttl_minutes: int
    email_code_resend_seconds: int
    backup_code_count: int
    code_pepper: str

    login_max_failures: int
    lock_minutes: int

    mail_backend: str
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    default_email: str

    company_name: str
    company_address: str
    company_logo: str
    unsubscribe_link: str
    app_base_url: str

    seed_demo_users: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        jwt_secret = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
        return cls(
            database_url=os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}"),
            jwt_secret=jwt_secret,
            jwt_2fa_secret=os.getenv("JWT_2FA_SECRET", "CHANGE_ME_DEV_2FA_SECRET"),
            jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "CHANGE_ME_DEV_REFRESH_SECRET"),
            jwt_alg="HS256",
            access_token_expire_minutes=_env_int("JWT_EXPIRE_MINUTES", 60),
            refresh_token_expire_days=_env_int("JWT_REFRESH_EXPIRE_DAYS", 7),
            preauth_ttl_seconds=_env_int("PREAUTH_TTL_SECONDS", 300),
            preauth_max_attempts=_env_int("PREAUTH_MAX_ATTEMPTS", 5),
            totp_valid_window=_env_int("TOTP_VALID_WINDOW", 1),
            totp_issuer=os.getenv("TOTP_ISSUER", "Clinic"),
            email_code_ttl_minutes=_env_int("EMAIL_CODE_TTL_MINUTES", 10),
            email_code_resend_seconds=_env_int("EMAIL_CODE_RESEND_SECONDS", 60),
            backup_code_count=_env_int("BACKUP_CODE_COUNT", 10),
            code_pepper=os.getenv("CODE_PEPPER", jwt_secret),
            login_max_failures=_env_int("LOGIN_MAX_FAILURES", 5),
            lock_minutes=_env_int("LOCK_MINUTES", 15),
            mail_backend=os.getenv("MAIL_BACKEND", "outbox").strip().lower(),
            smtp_host=os.getenv("SMTP_HOST", "localhost"),
            smtp_port=_env_int("SMTP_PORT", 25),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            default_email=os.getenv("DEFAULT_EMAIL", "noreply@clinic.local"),
            company_name=os.getenv("COMPANY_NAME", "Clinic"),
            company_address=os.getenv("COMPANY_ADDRESS", ""),
            company_logo=os.getenv("COMPANY_LOGO", ""),
            unsubscribe_link=os.getenv("UNSUBSCRIBE_LINK", ""),
            app_base_url=os.getenv("APP_BASE_URL", "http://127.0.0.1:8000").rstrip("/"),
            seed_demo_users=_env_bool("SEED_DEMO_USERS"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
