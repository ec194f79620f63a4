# designauto/config.py
from dotenv import load_dotenv
import os
from typing import Optional

# load local .env if present
load_dotenv()


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _get_param_from_ssm(name: str, decrypt: bool = False) -> Optional[str]:
    """
    Try to fetch from SSM when USE_SSM is enabled. boto3 is imported lazily so
    local runs and tests never need AWS credentials.
    """
    if not _truthy(os.getenv("USE_SSM")):
        return None
    try:
        from .utils.ssm import get_param
        return get_param(name, decrypt=decrypt)
    except Exception:
        return None


def _get_param_with_fallback(name: str, decrypt: bool = False, default: Optional[str] = None) -> Optional[str]:
    val = _get_param_from_ssm(name, decrypt=decrypt)
    if val:
        return val
    return os.getenv(name, default)


def get_database_url() -> str:
    db = _get_param_with_fallback("DATABASE_URL", decrypt=True)
    if not db:
        return "sqlite:///designauto-dev.sqlite"
    # Heroku-style URLs are rejected by SQLAlchemy 1.4+
    if db.startswith("postgres://"):
        db = "postgresql://" + db[len("postgres://"):]
    return db


class Config:
    SQLALCHEMY_DATABASE_URI = get_database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Shared secrets sent by the billing providers; read from SSM or env
    HOTMART_SECRET = _get_param_with_fallback("HOTMART_SECRET", decrypt=True, default="")
    DOPPUS_SECRET_KEY = _get_param_with_fallback("DOPPUS_SECRET_KEY", decrypt=True, default="")
    WEBHOOK_STRICT_AUTH = _truthy(os.getenv("WEBHOOK_STRICT_AUTH", "true"))

    ADMIN_API_TOKEN = _get_param_with_fallback("ADMIN_API_TOKEN", decrypt=True, default="")

    DEFAULT_PLAN_TYPE = os.getenv("DEFAULT_PLAN_TYPE", "mensal")
    DEFAULT_PLAN_DAYS = int(os.getenv("DEFAULT_PLAN_DAYS", "30"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
