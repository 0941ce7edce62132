"""
Pulley Protocol - Trading Ledger
Version: 1.0.0

Tracks pooled trading value and P&L.

- losses above a share of pool value are offered to insurance coverage
- the insurance side's profit share scales with its historical coverage
  ratio, floored at 20% and capped at 80%
- excess balances are periodically swept to a fixed collection address
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pulley_assets_v1 import AssetBank
from pulley_config_v1 import TradingLedgerConfig
from pulley_enforcement_v1 import (
    AssetNotAllowed,
    EventLog,
    InsufficientBalance,
    PermissionGate,
    Snapshottable,
    logger,
    nonreentrant,
    require_address,
    require_amount
)
from pulley_liquidity_engine_v1 import LiquidityEngine
import pulley_metrics as metrics

class TradingLedger(Snapshottable):
    """Aggregate pool value, P&L and the dynamic profit-share ratio."""

    MIN_PROFIT_SHARE = 20
    MAX_PROFIT_SHARE = 80
    PROFIT_SHARE_RANGE = MAX_PROFIT_SHARE - MIN_PROFIT_SHARE

    SNAPSHOT_FIELDS = (
        "supported_assets", "supported_index", "pool_balances", "user_balances",
        "total_pool_value", "total_trading_losses", "total_trading_profits",
        "pending_profit_distribution", "total_losses_covered_by_pulley",
        "pulley_token_profit_share", "last_sweep_at"
    )

    def __init__(
        self,
        config: TradingLedgerConfig,
        engine: LiquidityEngine,
        assets: AssetBank,
        gate: PermissionGate,
        events: Optional[EventLog] = None,
        pnl_reconciler: Optional[Callable[[], None]] = None
    ):
        self.identity = config.identity
        self.config = config
        self.engine = engine
        self.assets = assets
        self.gate = gate
        self.events = events or engine.events
        self.pnl_reconciler = pnl_reconciler

        self.supported_assets: List[str] = []
        self.supported_index: Dict[str, int] = {}
        for asset in config.supported_assets:
            self._add_supported(asset)

        self.pool_balances: Dict[str, int] = {}
        self.user_balances: Dict[str, Dict[str, int]] = {}

        self.total_pool_value = 0
        self.total_trading_losses = 0
        self.total_trading_profits = 0
        self.pending_profit_distribution = 0
        self.total_losses_covered_by_pulley = 0
        self.pulley_token_profit_share = self.MIN_PROFIT_SHARE

        self.last_sweep_at: Optional[datetime] = None

        logger.info(f"[LEDGER] Initialized {self.identity} with assets {self.supported_assets}")

    # ============================================
    # CONFIGURATION
    # ============================================

    def set_supported_asset(self, caller: str, asset: str, supported: bool):
        self.gate.require(caller, "ledger.set_supported_asset")
        require_address(asset, "asset")

        if supported:
            self._add_supported(asset)
        elif asset in self.supported_index:
            # Swap-remove keeps the index map consistent in O(1)
            position = self.supported_index.pop(asset)
            last = self.supported_assets.pop()
            if last != asset:
                self.supported_assets[position] = last
                self.supported_index[last] = position

        self.events.emit("ledger", "SupportedAssetUpdated", asset=asset, supported=supported)

    def is_supported(self, asset: str) -> bool:
        return asset in self.supported_index

    # ============================================
    # DEPOSITS & WITHDRAWALS
    # ============================================

    @nonreentrant
    def deposit_asset(self, caller: str, asset: str, amount: int):
        self.gate.require(caller, "ledger.deposit_asset")
        self._require_supported(asset)
        require_amount(amount)

        self.assets.transfer_from(asset, self.identity, caller, self.identity, amount)

        self.pool_balances[asset] = self.pool_balances.get(asset, 0) + amount
        user = self.user_balances.setdefault(caller, {})
        user[asset] = user.get(asset, 0) + amount
        self.total_pool_value += amount

        self.events.emit("ledger", "AssetDeposited", user=caller, asset=asset, amount=amount)
        logger.info(f"[LEDGER] {caller} deposited {amount:,} {asset} (pool value: {self.total_pool_value:,})")

    @nonreentrant
    def withdraw_asset(self, caller: str, asset: str, amount: int):
        self.gate.require(caller, "ledger.withdraw_asset")
        self._require_supported(asset)
        require_amount(amount)

        self._reconcile_pending_pnl()

        user = self.user_balances.get(caller, {})
        balance = user.get(asset, 0)
        if balance < amount:
            raise InsufficientBalance(f"{caller} has {balance:,} {asset} in the pool, asked {amount:,}")

        pool_balance = self.pool_balances.get(asset, 0)
        if pool_balance < amount:
            raise InsufficientBalance(f"Pool holds {pool_balance:,} {asset}, asked {amount:,}")

        user[asset] = balance - amount
        self.pool_balances[asset] = pool_balance - amount
        self.total_pool_value = max(0, self.total_pool_value - amount)

        self.assets.transfer(asset, self.identity, caller, amount)

        self.events.emit("ledger", "AssetWithdrawn", user=caller, asset=asset, amount=amount)
        logger.info(f"[LEDGER] {caller} withdrew {amount:,} {asset} (pool value: {self.total_pool_value:,})")

    def _reconcile_pending_pnl(self):
        """Settle outstanding cross-chain P&L before balances move."""
        if self.pnl_reconciler is None:
            return
        self.pnl_reconciler()

    # ============================================
    # PROFIT & LOSS
    # ============================================

    @nonreentrant
    def record_trading_loss(self, caller: str, loss_amount_usd: int) -> int:
        """
        Record a trading loss. Returns the amount covered by insurance
        (0 when the pool absorbed it).
        """
        self.gate.require(caller, "ledger.record_trading_loss")
        require_amount(loss_amount_usd, "loss_amount_usd")

        self.total_trading_losses += loss_amount_usd

        threshold = self.total_pool_value * self.config.loss_coverage_threshold_percent // 100
        covered_amount = 0

        if loss_amount_usd > threshold:
            logger.info(f"[LEDGER] Loss {loss_amount_usd:,} exceeds threshold {threshold:,}, requesting coverage")
            if self.engine.cover_trading_loss(self.identity, loss_amount_usd):
                covered_amount = loss_amount_usd
                self.total_losses_covered_by_pulley += covered_amount
                self._update_profit_share()

        if covered_amount == 0:
            self.total_pool_value = max(0, self.total_pool_value - loss_amount_usd)

        self.events.emit("ledger", "TradingLossRecorded", amount=loss_amount_usd,
                         covered=covered_amount, pool_value=self.total_pool_value,
                         profit_share=self.pulley_token_profit_share)
        metrics.record_trading_loss(loss_amount_usd, covered_amount > 0,
                                    self.total_pool_value, self.pulley_token_profit_share)
        logger.info(
            f"[LEDGER] Loss {loss_amount_usd:,} recorded: covered={covered_amount:,}, "
            f"pool value={self.total_pool_value:,}, profit share={self.pulley_token_profit_share}%"
        )
        return covered_amount

    def _update_profit_share(self):
        if self.total_trading_losses == 0:
            return
        coverage_bonus = self.total_losses_covered_by_pulley * self.PROFIT_SHARE_RANGE // self.total_trading_losses
        self.pulley_token_profit_share = self.MIN_PROFIT_SHARE + min(self.PROFIT_SHARE_RANGE, coverage_bonus)
        self.events.emit("ledger", "ProfitShareUpdated", profit_share=self.pulley_token_profit_share)

    @nonreentrant
    def record_trading_profit(self, caller: str, profit_amount_usd: int):
        self.gate.require(caller, "ledger.record_trading_profit")
        require_amount(profit_amount_usd, "profit_amount_usd")

        self.total_trading_profits += profit_amount_usd
        self.total_pool_value += profit_amount_usd
        self.pending_profit_distribution += profit_amount_usd

        self.events.emit("ledger", "TradingProfitRecorded", amount=profit_amount_usd,
                         pending=self.pending_profit_distribution)
        metrics.record_trading_profit(profit_amount_usd, self.total_pool_value)
        logger.info(f"[LEDGER] Profit {profit_amount_usd:,} recorded (pending: {self.pending_profit_distribution:,})")

    @nonreentrant
    def distribute_profits(self, caller: str) -> Tuple[int, int]:
        """
        Drain pending profit. Returns (pulley_share, pool_share).

        Insurance providers only share in profit once they have covered a loss.
        """
        self.gate.require(caller, "ledger.distribute_profits")

        pending = self.pending_profit_distribution
        if pending == 0:
            return 0, 0

        self.pending_profit_distribution = 0

        if self.total_losses_covered_by_pulley > 0:
            pulley_share = pending * self.pulley_token_profit_share // 100
            pool_share = pending - pulley_share
            if pulley_share > 0:
                self.engine.distribute_profits(self.identity, pulley_share)
        else:
            pulley_share = 0
            pool_share = pending

        self.events.emit("ledger", "ProfitsDistributed", pulley_share=pulley_share, pool_share=pool_share)
        logger.info(f"[LEDGER] Distributed {pending:,}: insurance={pulley_share:,}, pool={pool_share:,}")
        return pulley_share, pool_share

    # ============================================
    # PERIODIC SWEEP
    # ============================================

    def sweep_trigger(self) -> int:
        return self.config.sweep_threshold * self.config.sweep_multiplier

    def check_upkeep(self, now: Optional[datetime] = None) -> bool:
        """True when the sweep interval has elapsed and some asset qualifies."""
        now = now or datetime.now()
        if self.last_sweep_at is not None:
            if now - self.last_sweep_at < timedelta(seconds=self.config.sweep_interval_seconds):
                return False
        return any(self._qualifies_for_sweep(asset) for asset in self.supported_assets)

    def _qualifies_for_sweep(self, asset: str) -> bool:
        balance = self.pool_balances.get(asset, 0)
        return balance > 0 and balance >= self.sweep_trigger()

    @nonreentrant
    def sweep_to_collector(self, caller: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Move qualifying pool balances to the collection address."""
        self.gate.require(caller, "ledger.sweep_to_collector")
        now = now or datetime.now()

        if self.last_sweep_at is not None:
            elapsed = now - self.last_sweep_at
            if elapsed < timedelta(seconds=self.config.sweep_interval_seconds):
                logger.info(f"[LEDGER] Sweep skipped, last run {elapsed.total_seconds():.0f}s ago")
                return {}

        swept: Dict[str, int] = {}

        for asset in list(self.supported_assets):
            if not self._qualifies_for_sweep(asset):
                continue
            balance = self.pool_balances[asset]
            self.pool_balances[asset] = 0
            self.total_pool_value = max(0, self.total_pool_value - balance)
            swept[asset] = balance

        self.last_sweep_at = now

        for asset, amount in swept.items():
            self.assets.transfer(asset, self.identity, self.config.collector_address, amount)
            self.events.emit("ledger", "AssetSwept", asset=asset, amount=amount,
                             collector=self.config.collector_address)
            metrics.record_sweep(asset, amount, self.total_pool_value)
            logger.info(f"[LEDGER] Swept {amount:,} {asset} to {self.config.collector_address}")

        return swept

    # ============================================
    # VIEWS
    # ============================================

    def get_pool_balance(self, asset: str) -> int:
        return self.pool_balances.get(asset, 0)

    def get_user_balance(self, user: str, asset: str) -> int:
        return self.user_balances.get(user, {}).get(asset, 0)

    def to_dict(self) -> Dict:
        return {
            'total_pool_value': self.total_pool_value,
            'total_trading_losses': self.total_trading_losses,
            'total_trading_profits': self.total_trading_profits,
            'pending_profit_distribution': self.pending_profit_distribution,
            'total_losses_covered_by_pulley': self.total_losses_covered_by_pulley,
            'pulley_token_profit_share': self.pulley_token_profit_share,
            'pool_balances': dict(self.pool_balances)
        }

    # ============================================
    # INTERNALS
    # ============================================

    def _add_supported(self, asset: str):
        if asset in self.supported_index:
            return
        self.supported_index[asset] = len(self.supported_assets)
        self.supported_assets.append(asset)

    def _require_supported(self, asset: str):
        require_address(asset, "asset")
        if not self.is_supported(asset):
            raise AssetNotAllowed(f"Asset {asset} is not supported by the trading ledger")
