from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./finance.db"
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Fernet key material for stored Plaid access tokens (falls back to secret_key)
    encryption_key: Optional[str] = None

    # Plaid settings
    plaid_client_id: str = ""
    plaid_secret: str = ""
    plaid_env: str = "sandbox"
    plaid_client_name: str = "Finance and Budget Tracker"
    plaid_country_codes: List[str] = ["US"]
    plaid_language: str = "en"
    plaid_webhook_url: Optional[str] = None
    # Reject webhooks whose Plaid-Verification JWT does not check out
    plaid_verify_webhooks: bool = True
    plaid_timeout_seconds: float = 30.0
    plaid_page_size: int = 500

    # Sync settings
    initial_sync_days: int = 30

    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000"

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
