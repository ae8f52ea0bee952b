from __future__ import annotations

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

def parse_admins(value: str) -> list[int]:
    if not value:
        return []
    return [int(x.strip()) for x in value.split(",") if x.strip()]

class Settings(BaseSettings):
    bot_token: str = Field(default="dummy-token", alias="BOT_TOKEN")
    admins_raw: str = Field(default="", alias="ADMINS")
    tz: str = Field(default="Africa/Addis_Ababa", alias="TZ")

    db_url: str = Field(default="sqlite+aiosqlite:///./langcenter.sqlite3", alias="DB_URL")

    # booking policy
    booking_expiration_days: int = Field(default=30, alias="BOOKING_EXPIRATION_DAYS")
    cancellation_window_hours: int = Field(default=24, alias="CANCELLATION_WINDOW_HOURS")
    default_hourly_rate: Decimal = Field(default=Decimal("50"), alias="DEFAULT_HOURLY_RATE")
    lesson_types: list[str] = Field(default=["individual", "group"], alias="LESSON_TYPES")

    # payment policy
    currency: str = Field(default="ETB", alias="CURRENCY")
    tax_rate: Decimal = Field(default=Decimal("0.10"), alias="TAX_RATE")
    card_fee_rate: Decimal = Field(default=Decimal("0.029"), alias="CARD_FEE_RATE")
    refund_full_hours: int = Field(default=48, alias="REFUND_FULL_HOURS")
    refund_partial_hours: int = Field(default=24, alias="REFUND_PARTIAL_HOURS")
    refund_partial_percent: int = Field(default=50, alias="REFUND_PARTIAL_PERCENT")

    # scheduler
    expiry_sweep_minutes: int = Field(default=60, alias="EXPIRY_SWEEP_MINUTES")
    reminder_hour: int = Field(default=9, alias="REMINDER_HOUR")
    cleanup_hour: int = Field(default=2, alias="CLEANUP_HOUR")
    notification_retention_days: int = Field(default=30, alias="NOTIFICATION_RETENTION_DAYS")

    @field_validator("lesson_types", mode="before")
    @classmethod
    def _parse_lesson_types(cls, v):
        if isinstance(v, (list, tuple)):
            return [str(x).strip().lower() for x in v]
        if v is None or v == "":
            return ["individual", "group"]
        if isinstance(v, str):
            import json
            try:
                parsed = json.loads(v)
                if isinstance(parsed, (list, tuple)):
                    return [str(x).strip().lower() for x in parsed]
            except ValueError:
                return [x.lower() for x in v.replace(" ", "").split(",") if x]
        return [str(v).lower()]

    telegram_notifications_enabled: bool = Field(
        default=True, alias="TELEGRAM_NOTIFICATIONS_ENABLED"
    )

    smtp_enabled: bool = Field(default=False, alias="SMTP_ENABLED")
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="", alias="SMTP_FROM")

    payment_env: str = Field(default="mock", alias="PAYMENT_ENV")
    chapa_secret_key: str = Field(default="", alias="CHAPA_SECRET_KEY")
    chapa_base_url: str = Field(default="https://api.chapa.co/v1", alias="CHAPA_BASE_URL")
    chapa_callback_url: str = Field(default="", alias="CHAPA_CALLBACK_URL")
    chapa_return_url: str = Field(
        default="http://localhost:3000/student-dashboard", alias="CHAPA_RETURN_URL"
    )
    gateway_timeout_seconds: int = Field(default=10, alias="GATEWAY_TIMEOUT_SECONDS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
    }

    @property
    def admins(self) -> list[int]:
        return parse_admins(self.admins_raw)

settings = Settings()
