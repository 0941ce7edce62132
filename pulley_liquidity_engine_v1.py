"""
Pulley Protocol - Liquidity Engine
Version: 1.0.0

Holds real asset reserves, tracks each provider's proportional claim, and
mints/burns the stable value token 1:1 against the unit of account.

Deposits pull assets in before any state changes. Withdrawals finish every
state change before assets leave custody.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from pulley_assets_v1 import AssetBank
from pulley_config_v1 import LiquidityEngineConfig
from pulley_enforcement_v1 import (
    AssetNotAllowed,
    EventLog,
    InsufficientReserves,
    InsufficientTokens,
    PermissionGate,
    Snapshottable,
    logger,
    nonreentrant,
    require_address,
    require_amount
)
from pulley_stable_token_v1 import StableValueToken
import pulley_metrics as metrics

# Fixed-point scale for proportional withdrawals
SCALE = 10 ** 18

# ============================================
# DATA MODELS
# ============================================

@dataclass
class Provider:
    """A liquidity provider's claim on pooled reserves."""
    address: str
    assets_deposited: int = 0  # unit-of-account value
    pulley_tokens_owned: int = 0
    deposit_time: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.assets_deposited > 0 or self.pulley_tokens_owned > 0

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'assets_deposited': self.assets_deposited,
            'pulley_tokens_owned': self.pulley_tokens_owned,
            'deposit_time': self.deposit_time.isoformat() if self.deposit_time else None,
            'active': self.is_active
        }

# ============================================
# LIQUIDITY ENGINE
# ============================================

class LiquidityEngine(Snapshottable):
    """Pooled reserves, provider claims and insurance capacity."""

    SNAPSHOT_FIELDS = (
        "allowed_assets", "asset_reserves", "providers", "provider_roster",
        "provider_index", "total_backing_value", "total_insurance_backing",
        "total_losses_covered"
    )

    def __init__(
        self,
        config: LiquidityEngineConfig,
        token: StableValueToken,
        assets: AssetBank,
        gate: PermissionGate,
        events: Optional[EventLog] = None
    ):
        self.identity = config.identity
        self.token = token
        self.assets = assets
        self.gate = gate
        self.events = events or token.events

        self.allowed_assets: Dict[str, bool] = {asset: True for asset in config.allowed_assets}
        self.asset_reserves: Dict[str, int] = {}

        self.providers: Dict[str, Provider] = {}
        self.provider_roster: List[str] = []
        self.provider_index: Dict[str, int] = {}

        self.total_backing_value = 0
        self.total_insurance_backing = 0
        self.total_losses_covered = 0

        logger.info(f"[ENGINE] Initialized {self.identity} with assets {sorted(self.allowed_assets)}")

    # ============================================
    # CONFIGURATION
    # ============================================

    def set_asset_allowed(self, caller: str, asset: str, allowed: bool):
        self.gate.require(caller, "engine.set_asset_allowed")
        require_address(asset, "asset")
        self.allowed_assets[asset] = allowed
        self.events.emit("engine", "AssetAllowed", asset=asset, allowed=allowed)
        logger.info(f"[ENGINE] Asset {asset} allowed={allowed}")

    # ============================================
    # DEPOSITS
    # ============================================

    @nonreentrant
    def provide_liquidity(self, caller: str, asset: str, amount: int) -> int:
        """
        Deposit an allowed asset and receive stable tokens 1:1.

        Returns the number of tokens minted.
        """
        self.gate.require(caller, "engine.provide_liquidity")
        self._require_allowed(asset)
        require_amount(amount)

        self._pull(asset, caller, amount)

        self.asset_reserves[asset] = self.asset_reserves.get(asset, 0) + amount
        usd_value = amount

        provider = self.providers.get(caller)
        if provider is None:
            provider = Provider(address=caller)
            self.providers[caller] = provider
            self.provider_index[caller] = len(self.provider_roster)
            self.provider_roster.append(caller)
            logger.info(f"[ENGINE] New provider {caller} (roster size: {len(self.provider_roster)})")

        provider.assets_deposited += usd_value
        provider.pulley_tokens_owned += usd_value
        provider.deposit_time = datetime.now()

        self.total_backing_value += usd_value

        self.token.mint(self.identity, caller, usd_value)

        self.events.emit("engine", "LiquidityProvided", provider=caller, asset=asset,
                         amount=amount, tokens_minted=usd_value)
        metrics.record_liquidity_provided(asset, amount)
        logger.info(f"[ENGINE] {caller} provided {amount:,} {asset} → {usd_value:,} tokens")
        return usd_value

    @nonreentrant
    def insurance_backing_minter(self, caller: str, asset: str, amount: int) -> int:
        """
        Pooled insurance deposit from the cross-chain allocator.

        Same custody and mint mechanics as provide_liquidity, without a
        provider record. The mint acts on behalf of the caller so that the
        token books the value as insurance-sourced.
        """
        self.gate.require(caller, "engine.insurance_backing_minter")
        self._require_allowed(asset)
        require_amount(amount)

        self._pull(asset, caller, amount)

        self.asset_reserves[asset] = self.asset_reserves.get(asset, 0) + amount
        self.total_insurance_backing += amount

        self.token.mint(caller, caller, amount)

        self.events.emit("engine", "InsuranceBackingAdded", allocator=caller, asset=asset, amount=amount)
        metrics.record_insurance_backing(asset, amount)
        logger.info(f"[ENGINE] Insurance backing +{amount:,} {asset} (total: {self.total_insurance_backing:,})")
        return amount

    # ============================================
    # WITHDRAWALS
    # ============================================

    @nonreentrant
    def withdraw_liquidity(self, caller: str, asset: str, tokens_to_redeem: int) -> int:
        """
        Redeem stable tokens for a proportional share of the caller's deposit.

        Returns the amount of asset sent back.
        """
        self.gate.require(caller, "engine.withdraw_liquidity")
        self._require_allowed(asset)
        require_amount(tokens_to_redeem, "tokens_to_redeem")

        provider = self.providers.get(caller)
        owned_before = provider.pulley_tokens_owned if provider else 0
        if owned_before < tokens_to_redeem:
            raise InsufficientTokens(
                f"{caller} owns {owned_before:,} tokens, cannot redeem {tokens_to_redeem:,}"
            )

        deposited_before = provider.assets_deposited

        # Scale up before dividing so truncation does not favour the pool
        share = tokens_to_redeem * SCALE // owned_before
        asset_to_return = deposited_before * share // SCALE

        reserve = self.asset_reserves.get(asset, 0)
        if reserve < asset_to_return:
            raise InsufficientReserves(
                f"{asset} reserve {reserve:,} cannot cover withdrawal of {asset_to_return:,}"
            )

        provider.assets_deposited = deposited_before - asset_to_return
        provider.pulley_tokens_owned = owned_before - tokens_to_redeem
        self.total_backing_value = max(0, self.total_backing_value - asset_to_return)
        self.asset_reserves[asset] = reserve - asset_to_return

        self.token.burn(self.identity, caller, tokens_to_redeem)

        if asset_to_return > 0:
            self.assets.transfer(asset, self.identity, caller, asset_to_return)

        self.events.emit("engine", "LiquidityWithdrawn", provider=caller, asset=asset,
                         tokens_redeemed=tokens_to_redeem, amount=asset_to_return)
        metrics.record_liquidity_withdrawn(asset, asset_to_return)
        logger.info(f"[ENGINE] {caller} redeemed {tokens_to_redeem:,} tokens → {asset_to_return:,} {asset}")
        return asset_to_return

    # ============================================
    # LOSS COVERAGE & PROFIT
    # ============================================

    @nonreentrant
    def cover_trading_loss(self, caller: str, loss_amount_usd: int) -> bool:
        """
        Absorb a trading loss with insurance funds.

        Returns False when insurance cannot cover it; that is an expected
        outcome, the caller lets pool value absorb the loss instead.
        """
        self.gate.require(caller, "engine.cover_trading_loss")
        require_amount(loss_amount_usd, "loss_amount_usd")

        if not self.token.can_cover_loss(loss_amount_usd):
            logger.warning(
                f"[ENGINE] Cannot cover loss {loss_amount_usd:,}: insurance funds {self.token.get_insurance_funds():,}"
            )
            return False

        if self.total_insurance_backing < loss_amount_usd:
            logger.warning(
                f"[ENGINE] Cannot cover loss {loss_amount_usd:,}: insurance backing {self.total_insurance_backing:,}"
            )
            return False

        self.total_losses_covered += loss_amount_usd
        self.total_insurance_backing -= loss_amount_usd

        self.token.burn_for_coverage(self.identity, loss_amount_usd)

        self.events.emit("engine", "TradingLossCovered", amount=loss_amount_usd,
                         total_covered=self.total_losses_covered)
        logger.warning(f"[ENGINE] Covered trading loss {loss_amount_usd:,} (total covered: {self.total_losses_covered:,})")
        return True

    @nonreentrant
    def distribute_profits(self, caller: str, profit_amount: int):
        self.gate.require(caller, "engine.distribute_profits")
        require_amount(profit_amount, "profit_amount")

        self.total_backing_value += profit_amount
        self.token.update_reserve_fund(self.identity, profit_amount, True)

        self.events.emit("engine", "ProfitsDistributed", amount=profit_amount)
        logger.info(f"[ENGINE] Profit share {profit_amount:,} added to backing (total: {self.total_backing_value:,})")

    # ============================================
    # VIEWS
    # ============================================

    def is_asset_allowed(self, asset: str) -> bool:
        return self.allowed_assets.get(asset, False)

    def get_provider(self, address: str) -> Optional[Provider]:
        return self.providers.get(address)

    def get_provider_count(self) -> int:
        return len(self.provider_roster)

    def get_providers(self, active_only: bool = False) -> List[Provider]:
        providers = [self.providers[address] for address in self.provider_roster]
        if active_only:
            providers = [p for p in providers if p.is_active]
        return providers

    def get_asset_reserve(self, asset: str) -> int:
        return self.asset_reserves.get(asset, 0)

    def get_insurance_capacity(self) -> int:
        return self.token.get_insurance_funds()

    # ============================================
    # INTERNALS
    # ============================================

    def _require_allowed(self, asset: str):
        require_address(asset, "asset")
        if not self.is_asset_allowed(asset):
            raise AssetNotAllowed(f"Asset {asset} is not allowed by the liquidity engine")

    def _pull(self, asset: str, owner: str, amount: int):
        self.assets.transfer_from(asset, self.identity, owner, self.identity, amount)
