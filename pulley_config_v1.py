"""
Pulley Protocol - Configuration
Version: 1.0.0

Per-component configuration, injected at construction. Each component keeps
its own allow-list; they are deliberately not unified.
"""

import os
from typing import Dict, List

from pydantic import BaseModel, Field, model_validator

DEFAULT_COLLECTOR = "0x5ee7C011ec7000000000000000000000000000C0"

class LiquidityEngineConfig(BaseModel):
    identity: str = Field("pulley-engine", min_length=1)
    allowed_assets: List[str] = Field(default_factory=list)

class TradingLedgerConfig(BaseModel):
    identity: str = Field("pulley-trading-ledger", min_length=1)
    supported_assets: List[str] = Field(default_factory=list)

    # Loss above this share of pool value is routed to insurance coverage
    loss_coverage_threshold_percent: int = Field(5, ge=0, le=100)

    # Sweep policy: an asset is swept once its pool balance reaches
    # sweep_threshold * sweep_multiplier, at most once per interval
    collector_address: str = Field(DEFAULT_COLLECTOR, min_length=1)
    sweep_threshold: int = Field(10_000, ge=0)
    sweep_multiplier: int = Field(1, ge=1)
    sweep_interval_seconds: int = Field(86_400, ge=0)

    class Config:
        json_schema_extra = {
            "example": {
                "supported_assets": ["USDC", "USDT"],
                "loss_coverage_threshold_percent": 5,
                "sweep_threshold": 10000,
                "sweep_multiplier": 1,
                "sweep_interval_seconds": 86400
            }
        }

class CrossChainConfig(BaseModel):
    identity: str = Field("pulley-cross-chain", min_length=1)
    supported_assets: List[str] = Field(default_factory=list)
    profit_threshold: int = Field(1_000, gt=0)
    nest_vault_destination: str = Field("nest-vault-chain", min_length=1)
    limit_order_destination: str = Field("limit-order-chain", min_length=1)

    @model_validator(mode="after")
    def destinations_are_distinct(self):
        if self.nest_vault_destination == self.limit_order_destination:
            raise ValueError("Vault and limit-order destinations must differ")
        return self

class ProtocolConfig(BaseModel):
    admin: str = Field("pulley-admin", min_length=1)
    relayer: str = Field("pulley-relayer", min_length=1)
    engine: LiquidityEngineConfig = Field(default_factory=LiquidityEngineConfig)
    ledger: TradingLedgerConfig = Field(default_factory=TradingLedgerConfig)
    cross_chain: CrossChainConfig = Field(default_factory=CrossChainConfig)

    @classmethod
    def for_assets(cls, assets: List[str], **overrides) -> "ProtocolConfig":
        """Same asset list on every component's allow-list."""
        config = cls(**overrides)
        config.engine.allowed_assets = list(assets)
        config.ledger.supported_assets = list(assets)
        config.cross_chain.supported_assets = list(assets)
        return config

    @model_validator(mode="after")
    def identities_are_distinct(self):
        identities = [self.admin, self.relayer, self.engine.identity,
                      self.ledger.identity, self.cross_chain.identity]
        if len(set(identities)) != len(identities):
            raise ValueError("Component identities must be distinct")
        return self

class ApiConfig(BaseModel):
    """Credentials for the HTTP surface. Keys map to the identity they act as."""
    operator_keys: Dict[str, str] = Field(default_factory=dict)
    relay_keys: Dict[str, str] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "operator_keys": {"<operator api key>": "pulley-admin"},
                "relay_keys": {"<vault relay key>": "nest-vault-chain"}
            }
        }

    @model_validator(mode="after")
    def keys_are_not_blank(self):
        for key in list(self.operator_keys) + list(self.relay_keys):
            if not key.strip():
                raise ValueError("API keys must not be blank")
        return self

    @classmethod
    def from_env(cls, variable: str = "PULLEY_API_CONFIG") -> "ApiConfig":
        """Read credentials from a JSON environment variable; none configured means every key is refused."""
        raw = os.environ.get(variable)
        if not raw:
            return cls()
        return cls.model_validate_json(raw)
