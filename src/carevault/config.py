"""Service configuration loaded from the environment (prefix CAREVAULT_)."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# HS256 keys shorter than the digest size weaken the signature
MIN_SECRET_BYTES = 32


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CAREVAULT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Session tokens
    session_secret: SecretStr
    token_algorithm: str = "HS256"
    staff_token_ttl_seconds: int = Field(default=8 * 3600, gt=0)
    patient_token_ttl_seconds: int = Field(default=24 * 3600, gt=0)

    # One-time passcodes
    otp_ttl_seconds: int = Field(default=300, gt=0)
    otp_max_attempts: int = Field(default=5, gt=0)
    otp_digits: int = Field(default=6, ge=4, le=10)
    otp_sweep_interval_seconds: float = Field(default=60.0, ge=0)

    # Passwords (Argon2id work factor)
    password_min_length: int = Field(default=8, ge=1)
    argon2_time_cost: int = Field(default=3, ge=1)
    argon2_memory_cost: int = Field(default=65536, ge=8)
    argon2_parallelism: int = Field(default=4, ge=1)

    # Record store / notifier calls
    upstream_timeout_seconds: float = Field(default=10.0, gt=0)

    # SMTP delivery of OTP codes
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[SecretStr] = None
    smtp_sender: Optional[str] = None

    @field_validator("session_secret")
    @classmethod
    def _secret_long_enough(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value().encode()) < MIN_SECRET_BYTES:
            raise ValueError(f"session_secret must be at least {MIN_SECRET_BYTES} bytes")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
