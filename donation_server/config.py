"""Runtime settings collected from the environment (and ``.env``)."""

import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

BASE_DIR = Path(__file__).resolve().parent

PRODUCTION_CHECKOUT_URL = "https://checkout.paycom.uz"
TEST_CHECKOUT_URL = "https://test.paycom.uz"

# 12 часов — окно, после которого неподтверждённая транзакция отменяется
DEFAULT_TRANSACTION_TTL_MS = 12 * 60 * 60 * 1000

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Settings(BaseModel):
    merchant_id: str
    secret_key: str
    account_field: str = "donation_id"
    base_url: str = "https://example.com"
    production: bool = False
    database_url: str = f"sqlite+aiosqlite:///{BASE_DIR / 'database.db'}"
    transaction_ttl_ms: int = DEFAULT_TRANSACTION_TTL_MS

    @field_validator("account_field")
    @classmethod
    def check_account_field(cls, value: str) -> str:
        if not _FIELD_NAME_RE.match(value):
            raise ValueError(f"PAYME_ACCOUNT_FIELD must be an identifier, got {value!r}")
        return value

    @field_validator("transaction_ttl_ms")
    @classmethod
    def check_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("PAYME_TRANSACTION_TTL_MS must be positive")
        return value

    @property
    def checkout_url(self) -> str:
        return PRODUCTION_CHECKOUT_URL if self.production else TEST_CHECKOUT_URL


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Raises ``RuntimeError`` when the merchant credentials are absent.
    """
    load_dotenv(env_file)

    merchant_id = os.getenv("PAYME_MERCHANT_ID")
    secret_key = os.getenv("PAYME_SECRET_KEY")
    if not merchant_id or not secret_key:
        raise RuntimeError("PAYME_MERCHANT_ID и PAYME_SECRET_KEY не найдены в .env или переменных окружения")

    values = {
        "merchant_id": merchant_id,
        "secret_key": secret_key,
        "production": os.getenv("PAYME_ENV", "").lower() == "production",
    }
    optional = {
        "account_field": "PAYME_ACCOUNT_FIELD",
        "base_url": "BASE_URL",
        "database_url": "DATABASE_URL",
        "transaction_ttl_ms": "PAYME_TRANSACTION_TTL_MS",
    }
    for name, env_name in optional.items():
        raw = os.getenv(env_name)
        if raw:
            values[name] = raw
    return Settings(**values)
