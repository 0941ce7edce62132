"""
Pulley Protocol - Stable Value Token
Version: 1.0.0

Fungible balance ledger backed 1:1 by reserve.

- mint raises supply and reserve_fund by the same amount
- burn lowers both; the reserve side clamps at zero
- insurance_funds is the cross-chain-sourced slice of reserve and the only
  balance that loss coverage may consume
"""

from typing import Dict, Optional

from pulley_enforcement_v1 import (
    AlreadyConfigured,
    EventLog,
    InsufficientBalance,
    InsufficientReserveFund,
    NotPermitted,
    Snapshottable,
    logger,
    require_address,
    require_amount
)

class StableValueToken(Snapshottable):
    """The Pulley stable value token."""

    SNAPSHOT_FIELDS = ("balances", "reserve_fund", "insurance_funds", "engine", "cross_chain")

    def __init__(self, admin: str, events: Optional[EventLog] = None,
                 name: str = "Pulley Stable Token", symbol: str = "PST"):
        require_address(admin, "admin")
        self.name = name
        self.symbol = symbol
        self.admin = admin
        self.events = events or EventLog()

        self.engine: Optional[str] = None
        self.cross_chain: Optional[str] = None

        self.balances: Dict[str, int] = {}
        self.reserve_fund = 0
        self.insurance_funds = 0

    # ============================================
    # CONFIGURATION (SET ONCE)
    # ============================================

    def set_engine(self, caller: str, engine: str):
        self._require_admin(caller)
        require_address(engine, "engine")
        if self.engine is not None:
            raise AlreadyConfigured("Engine identity already set")
        self.engine = engine
        logger.info(f"[TOKEN] Engine identity set to {engine}")

    def set_cross_chain(self, caller: str, cross_chain: str):
        self._require_admin(caller)
        require_address(cross_chain, "cross_chain")
        if self.cross_chain is not None:
            raise AlreadyConfigured("Cross-chain identity already set")
        self.cross_chain = cross_chain
        logger.info(f"[TOKEN] Cross-chain identity set to {cross_chain}")

    # ============================================
    # SUPPLY MANAGEMENT
    # ============================================

    def mint(self, caller: str, to: str, amount: int):
        """Mint to a holder; a cross-chain caller marks the value as insurance."""
        require_address(to, "recipient")
        require_amount(amount)
        self._require_minter(caller)

        if caller == self.cross_chain:
            self.insurance_funds += amount

        self.reserve_fund += amount
        self.balances[to] = self.balances.get(to, 0) + amount

        self.events.emit("token", "Mint", to=to, amount=amount)
        self.events.emit("token", "ReserveFundUpdated", reserve_fund=self.reserve_fund,
                         insurance_funds=self.insurance_funds)
        logger.info(f"[TOKEN] Minted {amount:,} to {to} (reserve: {self.reserve_fund:,}, insurance: {self.insurance_funds:,})")

    def burn(self, caller: str, from_: str, amount: int):
        require_address(from_, "holder")
        require_amount(amount)
        self._require_minter(caller)

        balance = self.balances.get(from_, 0)
        if balance < amount:
            raise InsufficientBalance(f"{from_} holds {balance:,}, cannot burn {amount:,}")

        if caller == self.cross_chain and self.insurance_funds >= amount:
            self.insurance_funds -= amount

        self.reserve_fund = max(0, self.reserve_fund - amount)
        self.balances[from_] = balance - amount

        self.events.emit("token", "Burn", holder=from_, amount=amount)
        self.events.emit("token", "ReserveFundUpdated", reserve_fund=self.reserve_fund,
                         insurance_funds=self.insurance_funds)
        logger.info(f"[TOKEN] Burned {amount:,} from {from_} (reserve: {self.reserve_fund:,})")

    def burn_for_coverage(self, caller: str, amount: int):
        """Consume insurance reserve to cover a trading loss. No holder is debited."""
        require_amount(amount)
        self._require_engine(caller)

        if self.insurance_funds < amount:
            raise InsufficientReserveFund(
                f"Insurance funds {self.insurance_funds:,} cannot cover {amount:,}"
            )

        self.insurance_funds -= amount
        self.reserve_fund = max(0, self.reserve_fund - amount)

        self.events.emit("token", "CoverageBurn", amount=amount)
        self.events.emit("token", "ReserveFundUpdated", reserve_fund=self.reserve_fund,
                         insurance_funds=self.insurance_funds)
        logger.warning(f"[TOKEN] Coverage burn {amount:,} (insurance left: {self.insurance_funds:,})")

    def update_reserve_fund(self, caller: str, amount: int, increase: bool):
        """Reflect externally realized profit (or write-down) without touching supply."""
        require_amount(amount)
        self._require_engine(caller)

        if increase:
            self.reserve_fund += amount
        else:
            self.reserve_fund = max(0, self.reserve_fund - amount)

        self.events.emit("token", "ReserveFundUpdated", reserve_fund=self.reserve_fund,
                         insurance_funds=self.insurance_funds)
        logger.info(f"[TOKEN] Reserve fund {'+' if increase else '-'}{amount:,} → {self.reserve_fund:,}")

    # ============================================
    # HOLDER OPERATIONS
    # ============================================

    def transfer(self, caller: str, to: str, amount: int) -> bool:
        require_address(to, "recipient")
        require_amount(amount)
        balance = self.balances.get(caller, 0)
        if balance < amount:
            raise InsufficientBalance(f"{caller} holds {balance:,}, cannot send {amount:,}")
        self.balances[caller] = balance - amount
        self.balances[to] = self.balances.get(to, 0) + amount
        self.events.emit("token", "Transfer", sender=caller, to=to, amount=amount)
        return True

    # ============================================
    # VIEWS
    # ============================================

    def can_cover_loss(self, amount: int) -> bool:
        return self.insurance_funds >= amount

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def get_reserve_fund(self) -> int:
        return self.reserve_fund

    def get_insurance_funds(self) -> int:
        return self.insurance_funds

    def get_total_supply(self) -> int:
        return sum(self.balances.values())

    # ============================================
    # AUTHORIZATION
    # ============================================

    def _require_admin(self, caller: str):
        if caller != self.admin:
            raise NotPermitted(f"{caller} is not the token administrator")

    def _require_engine(self, caller: str):
        if self.engine is None or caller != self.engine:
            raise NotPermitted(f"{caller} is not the engine identity")

    def _require_minter(self, caller: str):
        if caller is None or caller not in (self.engine, self.cross_chain):
            raise NotPermitted(f"{caller} may not mint or burn")
