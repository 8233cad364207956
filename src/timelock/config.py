from __future__ import annotations

from enum import StrEnum

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TESTNET_HORIZON_URL = "https://horizon-testnet.stellar.org"
TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"
DRY_RUN_LOCK_HOLDER = "SIMULATED-LOCK-HOLDER"


class SigningMode(StrEnum):
    DRY_RUN = "dry_run"
    LOCAL_KEY = "local_key"
    EXTERNAL_WALLET = "external_wallet"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    state_db_path: str = Field(default="timelock_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    signing_mode: SigningMode = Field(default=SigningMode.DRY_RUN, alias="SIGNING_MODE")
    horizon_url: str = Field(default=TESTNET_HORIZON_URL, alias="HORIZON_URL")
    network_passphrase: str = Field(default=TESTNET_PASSPHRASE, alias="NETWORK_PASSPHRASE")
    lock_holder_address: str = Field(default="", alias="LOCK_HOLDER_ADDRESS")
    local_signer_secret: SecretStr | None = Field(default=None, alias="LOCAL_SIGNER_SECRET")
    local_signer: str | None = Field(default=None, alias="LOCAL_SIGNER")
    signer_url: str | None = Field(default=None, alias="SIGNER_URL")
    settlement_timeout_seconds: float = Field(default=30.0, alias="SETTLEMENT_TIMEOUT_SECONDS")

    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=5000, alias="API_PORT")
    api_prefix: str = Field(default="", alias="API_PREFIX")

    @field_validator("signing_mode", mode="before")
    def parse_signing_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @field_validator("local_signer_secret", "local_signer", "signer_url", mode="before")
    def blank_as_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("settlement_timeout_seconds")
    def validate_settlement_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SETTLEMENT_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("api_port")
    def validate_api_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("API_PORT must be between 1 and 65535")
        return value

    @field_validator("api_prefix")
    def normalize_api_prefix(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if cleaned and not cleaned.startswith("/"):
            cleaned = f"/{cleaned}"
        return cleaned

    def signing_setup_errors(self) -> list[str]:
        errors: list[str] = []
        if self.signing_mode == SigningMode.DRY_RUN:
            return errors
        if not self.lock_holder_address.strip():
            errors.append("LOCK_HOLDER_ADDRESS is required for live signing modes")
        if self.signing_mode == SigningMode.LOCAL_KEY and self.local_signer_secret is None:
            errors.append("LOCAL_SIGNER_SECRET is required when SIGNING_MODE=local_key")
        if self.signing_mode == SigningMode.EXTERNAL_WALLET and not self.signer_url:
            errors.append("SIGNER_URL is required when SIGNING_MODE=external_wallet")
        return errors

    def effective_lock_holder(self) -> str:
        return self.lock_holder_address.strip() or DRY_RUN_LOCK_HOLDER

    def is_live(self) -> bool:
        return self.signing_mode != SigningMode.DRY_RUN
