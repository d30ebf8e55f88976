"""Configuration surface for the compliance core."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class KYCConfig(BaseModel):
    """KYC state machine configuration."""
    verification_expiry_days: int = Field(default=365, gt=0)


class AMLConfig(BaseModel):
    """AML risk engine configuration."""
    large_transaction_threshold: int = Field(default=10_000, ge=0)
    structuring_round_unit: int = Field(default=10_000, gt=0)
    velocity_window_seconds: int = Field(default=86_400, gt=0)
    max_transactions_per_window: int = Field(default=100, gt=0)
    enable_pattern_detection: bool = True
    # Hex digest of the identity allowed to override risk scores; unset keeps
    # update_risk_score open to trusted callers.
    override_authority: Optional[str] = None


class SanctionsConfig(BaseModel):
    """Sanctions screening configuration."""
    # Hex digests allowed to perform manual overrides. Empty falls back to
    # accepting any non-empty authorization.
    authorized_overriders: List[str] = Field(default_factory=list)

    @field_validator("authorized_overriders", mode="before")
    @classmethod
    def parse_overriders(cls, v):
        """Parse comma-separated digests from env var."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v


class AttestationConfig(BaseModel):
    """Attestation aggregation configuration."""
    validity_period_days: int = Field(default=90, gt=0)
    enable_proof_verification: bool = True
    proof_generation_timeout_seconds: float = Field(default=60.0, gt=0)
    proof_verification_timeout_seconds: float = Field(default=120.0, gt=0)
    store_timeout_seconds: float = Field(default=10.0, gt=0)
    max_proof_size: int = Field(default=1024 * 1024, gt=0)  # 1MB


class ProofEngineConfig(BaseModel):
    """Proof engine selection."""
    mode: Literal["local", "remote"] = "local"
    secret_key: str = ""
    remote_endpoint: Optional[str] = None
    api_key: Optional[str] = None
    max_retries: int = Field(default=3, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    json_format: bool = True
    log_file: Optional[str] = None


class ComplianceSettings(BaseSettings):
    """Main compliance configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ZEROTRUST_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    environment: Literal["dev", "sandbox", "prod"] = "dev"

    kyc: KYCConfig = Field(default_factory=KYCConfig)
    aml: AMLConfig = Field(default_factory=AMLConfig)
    sanctions: SanctionsConfig = Field(default_factory=SanctionsConfig)
    attestation: AttestationConfig = Field(default_factory=AttestationConfig)
    proof_engine: ProofEngineConfig = Field(default_factory=ProofEngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_proof_engine(self) -> "ComplianceSettings":
        engine = self.proof_engine
        if engine.mode == "remote" and not engine.remote_endpoint:
            raise ValueError("proof_engine.remote_endpoint is required in remote mode")
        if self.environment == "prod" and engine.mode == "local":
            if len(engine.secret_key) < 32:
                raise ValueError(
                    "proof_engine.secret_key must be at least 32 characters in production. "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
                )
        if not engine.secret_key:
            engine.secret_key = "dev-only-proof-secret-not-for-production"
        return self


@lru_cache
def load_settings(env_file: str | None = None) -> ComplianceSettings:
    """Load ComplianceSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return ComplianceSettings(_env_file=env_path)


def is_production() -> bool:
    return os.getenv("ZEROTRUST_ENVIRONMENT", "dev") in ("prod", "production")
