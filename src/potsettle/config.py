from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="POTSETTLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # money in cents
    tolerance_cents: int = Field(1, ge=0)
    aggregate_tolerance_cents: int = Field(1, ge=0)
    minimum_transaction_cents: int = Field(1, ge=1)

    time_budget_ms: float = Field(2000.0, gt=0)
    exhaustive_search_limit: int = Field(12, ge=1, le=16)

    proof_max_age_days: int = Field(7, ge=1)
    signing_key_seed: Optional[str] = None

    weight_simplicity: float = Field(0.25, ge=0)
    weight_fairness: float = Field(0.25, ge=0)
    weight_efficiency: float = Field(0.25, ge=0)
    weight_user_friendliness: float = Field(0.25, ge=0)

    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("signing_key_seed")
    @classmethod
    def _check_seed(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("signing_key_seed must be hex encoded") from exc
        if len(raw) != 32:
            raise ValueError(f"signing_key_seed must encode 32 bytes, got {len(raw)}")
        return value.lower()

    @model_validator(mode="after")
    def _check_weights(self) -> "Settings":
        if sum(self.weights.values()) <= 0:
            raise ValueError("at least one scoring weight must be positive")
        return self

    @property
    def weights(self) -> dict[str, float]:
        return {
            "simplicity": self.weight_simplicity,
            "fairness": self.weight_fairness,
            "efficiency": self.weight_efficiency,
            "user_friendliness": self.weight_user_friendliness,
        }

    @property
    def signing_seed_bytes(self) -> Optional[bytes]:
        if self.signing_key_seed is None:
            return None
        return bytes.fromhex(self.signing_key_seed)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
