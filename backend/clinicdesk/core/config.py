# clinicdesk/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Auth / JWT (clinic admins)
        # ----------------------------
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))

        # Shared secret for operator tooling hitting /internal/*
        self.INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN", "")

        # ----------------------------
        # Stripe / provisioning
        # ----------------------------
        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.STRIPE_DEFAULT_CURRENCY = os.getenv("STRIPE_DEFAULT_CURRENCY", "brl").strip().lower()
        self.PROVISIONING_DEFAULT_PLAN = os.getenv("PROVISIONING_DEFAULT_PLAN", "monthly").strip().lower()
        # 0 disables reclaiming webhook events stuck in "processing".
        self.WEBHOOK_PROCESSING_LEASE_SECONDS = int(os.getenv("WEBHOOK_PROCESSING_LEASE_SECONDS", "0"))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.JWT_SECRET:
            missing.append("JWT_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if not self.STRIPE_SECRET_KEY:
            missing.append("STRIPE_SECRET_KEY")
        if not self.STRIPE_WEBHOOK_SECRET:
            missing.append("STRIPE_WEBHOOK_SECRET")
        if not self.INTERNAL_API_TOKEN:
            missing.append("INTERNAL_API_TOKEN")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if self.WEBHOOK_PROCESSING_LEASE_SECONDS < 0:
            raise RuntimeError("WEBHOOK_PROCESSING_LEASE_SECONDS must be >= 0")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL and not self.DB_MIGRATOR_USER:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_jwt_secret() -> None:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
