from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OPERATOR_API_KEY = "of-operator-dev-key"
DEFAULT_SYSTEM_API_KEY = "of-system-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OF_", extra="ignore")

    app_name: str = "orderflow"
    env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./orderflow.db"
    db_connect_timeout_seconds: int = 5
    db_statement_timeout_ms: int = 10_000
    db_pool_timeout_seconds: int = 10

    payments_webhook_secret: str | None = None
    carrier_webhook_secret: str | None = None
    signature_tolerance_seconds: int = 300
    webhook_signature_bypass: bool = Field(
        default=False,
        description="Skip signature checks entirely. Local testing only, refused outside dev.",
    )
    dedup_lease_seconds: int = 300

    order_number_prefix: str = "ORD"

    email_api_key: str | None = None
    email_api_base_url: str = "https://api.resend.com"
    email_from_address: str = "orders@example.com"
    email_timeout_seconds: float = 10.0

    auth_enabled: bool = True
    operator_api_key: str = DEFAULT_OPERATOR_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    operator_actor_id: str = "operator-001"
    system_actor_id: str = "system-001"

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        if self.webhook_signature_bypass:
            raise ValueError("OF_WEBHOOK_SIGNATURE_BYPASS may only be enabled when OF_ENV=dev")

        insecure_items: list[str] = []
        if self.operator_api_key == DEFAULT_OPERATOR_API_KEY:
            insecure_items.append("OF_OPERATOR_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("OF_SYSTEM_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
