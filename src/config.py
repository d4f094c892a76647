from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote_plus


SUPPORTED_APP_ENVS = {"SIT", "UAT"}
SUPPORTED_TOKEN_STORES = {"sql", "memory"}


def _current_app_env() -> str:
    default_env = "UAT" if os.getenv("RAILWAY_ENVIRONMENT", "").strip() else "SIT"
    raw = os.getenv("APP_ENV", default_env).strip().upper()
    if not raw:
        return default_env
    if raw not in SUPPORTED_APP_ENVS:
        raise ValueError(f"Invalid APP_ENV: {raw}. Supported values: {sorted(SUPPORTED_APP_ENVS)}")
    return raw


def _get_first_set(*env_names: str) -> str:
    for env_name in env_names:
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return ""


def _normalize_database_url(raw_url: str) -> str:
    if not raw_url:
        return raw_url
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
    if raw_url.startswith("postgresql://") and "+" not in raw_url.split("://", 1)[0]:
        return raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    if raw_url.startswith("postgresql+psycopg://"):
        return raw_url.replace("postgresql+psycopg://", "postgresql+psycopg2://", 1)
    return raw_url


def _with_sslmode_if_needed(db_url: str) -> str:
    if not db_url or "sslmode=" in db_url:
        return db_url
    lowered = db_url.lower()
    if "localhost" in lowered or "127.0.0.1" in lowered or lowered.startswith("sqlite"):
        return db_url
    sep = "&" if "?" in db_url else "?"
    return f"{db_url}{sep}sslmode=require"


def _build_database_url() -> str:
    prefix = _current_app_env()
    explicit = _get_first_set(f"{prefix}_DATABASE_URL", "DATABASE_URL", "DATABASE_PUBLIC_URL")
    host = _get_first_set(f"{prefix}_PGHOST", "PGHOST")
    port = _get_first_set(f"{prefix}_PGPORT", "PGPORT") or "5432"
    user = _get_first_set(f"{prefix}_PGUSER", "PGUSER")
    password = _get_first_set(f"{prefix}_PGPASSWORD", "PGPASSWORD")
    database = _get_first_set(f"{prefix}_PGDATABASE", "PGDATABASE")

    if explicit:
        return _with_sslmode_if_needed(_normalize_database_url(explicit))

    if host and user and database:
        pwd = quote_plus(password)
        url = f"postgresql+psycopg2://{user}:{pwd}@{host}:{port}/{database}"
        return _with_sslmode_if_needed(url)

    # Local dev fallback when DATABASE_URL is not set.
    sqlite_file = Path(os.getenv("SQLITE_DB_PATH", "./app.db")).as_posix()
    if sqlite_file.startswith("/"):
        return f"sqlite:///{sqlite_file}"
    return f"sqlite:///./{sqlite_file.lstrip('./')}"


def _build_db_schema() -> str:
    prefix = _current_app_env()
    return _get_first_set(f"{prefix}_DB_SCHEMA", "DB_SCHEMA") or "push_fanout"


def _token_store_kind() -> str:
    raw = os.getenv("TOKEN_STORE", "sql").strip().lower() or "sql"
    if raw not in SUPPORTED_TOKEN_STORES:
        raise ValueError(f"Invalid TOKEN_STORE: {raw}. Supported values: {sorted(SUPPORTED_TOKEN_STORES)}")
    return raw


def _firebase_private_key() -> str:
    # Keys pasted into env files carry literal "\n" sequences.
    return os.getenv("FIREBASE_PRIVATE_KEY", "").replace("\\n", "\n")


@dataclass(frozen=True)
class Settings:
    app_env: str = _current_app_env()
    app_name: str = os.getenv("APP_NAME", "push_fanout_service")
    app_debug: bool = os.getenv("APP_DEBUG", "false").lower() == "true"
    app_host: str = os.getenv("APP_HOST", "0.0.0.0")
    app_port: int = int(os.getenv("APP_PORT", "8012"))

    database_url: str = _build_database_url()
    db_schema: str = _build_db_schema()
    token_store: str = _token_store_kind()

    notification_provider: str = os.getenv("NOTIFICATION_PROVIDER", "mock").strip().lower()
    gateway_batch_size: int = int(os.getenv("GATEWAY_BATCH_SIZE", "500"))
    gateway_send_timeout_seconds: float = float(os.getenv("GATEWAY_SEND_TIMEOUT_SECONDS", "10"))

    firebase_credentials_path: str = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
    firebase_type: str = os.getenv("FIREBASE_TYPE", "service_account")
    firebase_project_id: str = os.getenv("FIREBASE_PROJECT_ID", "")
    firebase_private_key_id: str = os.getenv("FIREBASE_PRIVATE_KEY_ID", "")
    firebase_private_key: str = _firebase_private_key()
    firebase_client_email: str = os.getenv("FIREBASE_CLIENT_EMAIL", "")
    firebase_client_id: str = os.getenv("FIREBASE_CLIENT_ID", "")
    firebase_auth_uri: str = os.getenv("FIREBASE_AUTH_URI", "https://accounts.google.com/o/oauth2/auth")
    firebase_token_uri: str = os.getenv("FIREBASE_TOKEN_URI", "https://oauth2.googleapis.com/token")
    firebase_auth_provider_cert_url: str = os.getenv(
        "FIREBASE_AUTH_PROVIDER_CERT_URL",
        "https://www.googleapis.com/oauth2/v1/certs",
    )
    firebase_client_cert_url: str = os.getenv("FIREBASE_CLIENT_CERT_URL", "")

    def __post_init__(self) -> None:
        if self.gateway_batch_size < 1:
            raise ValueError(f"Invalid GATEWAY_BATCH_SIZE: {self.gateway_batch_size}. Must be >= 1")
        if self.gateway_send_timeout_seconds <= 0:
            raise ValueError(
                f"Invalid GATEWAY_SEND_TIMEOUT_SECONDS: {self.gateway_send_timeout_seconds}. Must be > 0"
            )

    def firebase_service_account(self) -> dict[str, str]:
        return {
            "type": self.firebase_type,
            "project_id": self.firebase_project_id,
            "private_key_id": self.firebase_private_key_id,
            "private_key": self.firebase_private_key,
            "client_email": self.firebase_client_email,
            "client_id": self.firebase_client_id,
            "auth_uri": self.firebase_auth_uri,
            "token_uri": self.firebase_token_uri,
            "auth_provider_x509_cert_url": self.firebase_auth_provider_cert_url,
            "client_x509_cert_url": self.firebase_client_cert_url,
        }


settings = Settings()


def get_settings() -> Settings:
    return settings
