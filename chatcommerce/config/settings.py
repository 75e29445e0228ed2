from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    mongo_uri: str = Field(..., env="MONGO_URI")
    twilio_auth_token: str = Field(..., env="TWILIO_AUTH_TOKEN")
    twilio_account_sid: str = Field(..., env="TWILIO_ACCOUNT_SID")
    twilio_from_number: str = Field("whatsapp:+14155238886", env="TWILIO_FROM_NUMBER")
    twilio_status_callback_url: Optional[str] = Field(default=None, env="TWILIO_STATUS_CALLBACK_URL")
    twilio_validate_signature: bool = Field(default=True, env="TWILIO_VALIDATE_SIGNATURE")
    public_base_url: Optional[str] = Field(default=None, env="PUBLIC_BASE_URL")

    admin_numbers: Union[List[str], str] = Field(default_factory=list, env="ADMIN_NUMBERS")

    # Inactivity: warn after this many idle seconds, reset after a further grace period
    session_warning_timeout: float = Field(default=300, env="SESSION_WARNING_TIMEOUT")
    session_termination_timeout: float = Field(default=120, env="SESSION_TERMINATION_TIMEOUT")

    numbered_list_limit: int = Field(default=15, env="NUMBERED_LIST_LIMIT")
    currency_symbol: str = Field(default="$", env="CURRENCY_SYMBOL")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @validator("admin_numbers", pre=True)
    def split_admin_numbers(cls, v):
        if not v:
            return []
        if isinstance(v, list):
            return v
        # Accept comma or semicolon separated numbers
        return [num.strip() for num in str(v).replace(";", ",").split(",") if num.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
