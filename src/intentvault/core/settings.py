"""
Central configuration for intentvault.

Typed settings read from environment variables (12-factor style) using
pydantic-settings. Every variable is prefixed with ``INTENTVAULT_``.

Usage:

    from intentvault.core.settings import get_settings

    settings = get_settings()
    timeout = settings.client.request_timeout
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """
    Settings used by the intent-submitting side (client / extension backend).
    """

    model_config = SettingsConfigDict(env_prefix="INTENTVAULT_")

    coordinator_url: str = Field(
        default="http://localhost:3001",
        description="Base URL of the coordinator HTTP API.",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for every outbound coordinator call.",
    )
    max_retries: int = Field(
        default=2,
        description="Bounded retries for transport failures only.",
    )
    retry_backoff: float = Field(
        default=0.5,
        description="Base backoff in seconds between transport retries.",
    )
    key_cache_ttl: float = Field(
        default=3600.0,
        description="Coordinator public key cache TTL in seconds.",
    )
    intent_expiry_ms: int = Field(
        default=300_000,
        description="Default validity window of a new intent.",
    )
    dev_mock_approval: bool = Field(
        default=False,
        description="Fall back to a flagged mock approval when the coordinator is unreachable.",
    )

    @field_validator("coordinator_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")


class CoordinatorSettings(BaseSettings):
    """
    Coordinator service settings: bind address, validation limits, keys.
    """

    model_config = SettingsConfigDict(env_prefix="INTENTVAULT_")

    host: str = Field(default="0.0.0.0", description="HTTP bind host.")
    port: int = Field(default=3001, description="HTTP bind port.")
    enclave_id: str = Field(default="intentvault-coordinator", description="Reported enclave id.")
    enclave_version: str = Field(default="1.0.0")
    rate_limit_requests: int = Field(default=30, description="Requests per window.")
    rate_limit_window: float = Field(default=60.0, description="Window length in seconds.")
    clock_skew_ms: int = Field(default=30_000)
    max_intent_age_ms: int = Field(default=24 * 60 * 60 * 1000)
    swap_timeout: float = Field(default=30.0)
    rsa_key_path: Optional[str] = Field(
        default=None,
        description="PEM path of the RSA-OAEP transport key. Generated in memory if unset.",
    )
    signing_key_path: Optional[str] = Field(
        default=None,
        description="PEM path of the Ed25519 approval signing key. Generated if unset.",
    )
    execution_key_path: Optional[str] = Field(
        default=None,
        description="PEM path of the Ed25519 execution account key. Generated if unset.",
    )
    ledger_path: str = Field(default=".intentvault/ledger.jsonl")


class ChainSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INTENTVAULT_")

    network: str = Field(default="devnet")
    rpc_url: Optional[str] = Field(default=None, description="Overrides the network default.")
    program_id: str = Field(default="ConfVau1t11111111111111111111111111111111111")

    @field_validator("network")
    @classmethod
    def _normalize_network(cls, v: str) -> str:
        v = (v or "devnet").lower()
        if v not in ("devnet", "testnet", "mainnet-beta", "localnet"):
            return "devnet"
        return v

    def resolved_rpc_url(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        if self.network == "localnet":
            return "http://127.0.0.1:8899"
        return f"https://api.{self.network}.solana.com"


class RuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INTENTVAULT_")

    log_level: str = Field(
        default="INFO",
        description="Log level of the intentvault logger tree (DEBUG/INFO/WARNING/ERROR).",
    )


class IntentVaultSettings(BaseSettings):
    """
    Root configuration object.

    Aggregates:
      - client
      - coordinator
      - chain
      - runtime
    """

    model_config = SettingsConfigDict(env_prefix="INTENTVAULT_")

    client: ClientSettings = Field(default_factory=ClientSettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    chain: ChainSettings = Field(default_factory=ChainSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)


@lru_cache(maxsize=1)
def get_settings() -> IntentVaultSettings:
    """Cached accessor for IntentVaultSettings."""
    return IntentVaultSettings()
