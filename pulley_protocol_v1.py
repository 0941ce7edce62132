"""
Pulley Protocol - Protocol Host
Version: 1.0.0

Composition root. Wires token, engine, ledger and allocator to one asset
bank, event log, permission gate and relay, then runs every protocol
operation through the InvariantEnforcer: all components are snapshotted
before the action and restored together if it raises or a post-check fails.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pulley_assets_v1 import AssetBank
from pulley_config_v1 import ProtocolConfig
from pulley_cross_chain_v1 import CrossChainAllocator, CrossChainRequest, FundAllocation
from pulley_enforcement_v1 import (
    AllowListPermissionGate,
    DecisionLedger,
    EventLog,
    InvariantEnforcer,
    PermissionGate,
    logger
)
from pulley_invariants_v1 import protocol_invariants
from pulley_liquidity_engine_v1 import LiquidityEngine
from pulley_messaging_v1 import InMemoryRelay
from pulley_stable_token_v1 import StableValueToken
from pulley_trading_ledger_v1 import TradingLedger
import pulley_metrics as metrics

PUBLIC_OPERATIONS = [
    "engine.provide_liquidity",
    "engine.withdraw_liquidity",
    "ledger.deposit_asset",
    "ledger.withdraw_asset"
]

ADMIN_OPERATIONS = [
    "engine.set_asset_allowed",
    "ledger.set_supported_asset",
    "ledger.record_trading_loss",
    "ledger.record_trading_profit",
    "ledger.distribute_profits",
    "ledger.sweep_to_collector",
    "xchain.set_supported_asset",
    "xchain.set_profit_threshold",
    "xchain.receive_funds",
    "xchain.deploy_to_nest_vault",
    "xchain.execute_limit_order",
    "xchain.check_remote_profit",
    "xchain.expire_request"
]

def default_grants(config: ProtocolConfig) -> List[Tuple[str, str]]:
    """Allow-list for a freshly wired protocol."""
    grants = [(AllowListPermissionGate.WILDCARD, op) for op in PUBLIC_OPERATIONS]
    grants += [(config.admin, op) for op in ADMIN_OPERATIONS]
    grants += [
        (config.ledger.identity, "engine.cover_trading_loss"),
        (config.ledger.identity, "engine.distribute_profits"),
        (config.cross_chain.identity, "engine.insurance_backing_minter"),
        (config.cross_chain.identity, "ledger.record_trading_profit"),
        (config.cross_chain.identity, "ledger.record_trading_loss"),
        (config.relayer, "xchain.handle_response")
    ]
    return grants

class PulleyProtocol:
    """All-or-nothing host for the Pulley components."""

    def __init__(
        self,
        config: Optional[ProtocolConfig] = None,
        assets: Optional[AssetBank] = None,
        gate: Optional[PermissionGate] = None,
        relay: Optional[InMemoryRelay] = None
    ):
        self.config = config or ProtocolConfig()
        self.admin = self.config.admin

        self.events = EventLog()
        self.assets = assets or AssetBank()
        self.gate = gate or AllowListPermissionGate(default_grants(self.config))
        self.relay = relay or InMemoryRelay(self.config.relayer)
        self.decision_ledger = DecisionLedger()

        self.token = StableValueToken(self.admin, self.events)
        self.engine = LiquidityEngine(self.config.engine, self.token, self.assets, self.gate, self.events)
        self.ledger = TradingLedger(self.config.ledger, self.engine, self.assets, self.gate, self.events)
        self.allocator = CrossChainAllocator(
            self.config.cross_chain, self.engine, self.ledger,
            self.assets, self.relay, self.gate, self.events
        )

        self.token.set_engine(self.admin, self.engine.identity)
        self.token.set_cross_chain(self.admin, self.allocator.identity)
        self.relay.connect(self.handle_response)

        self.enforcer = InvariantEnforcer(
            protocol_invariants(),
            self.decision_ledger,
            on_check=metrics.record_invariant_check,
            on_rollback=metrics.record_rollback
        )

        logger.info("[PROTOCOL] Pulley protocol initialized")

    # ============================================
    # SNAPSHOT / RESTORE
    # ============================================

    def snapshot(self) -> Dict[str, Any]:
        return {
            'token': self.token.snapshot(),
            'engine': self.engine.snapshot(),
            'ledger': self.ledger.snapshot(),
            'allocator': self.allocator.snapshot(),
            'assets': self.assets.snapshot(),
            'events': len(self.events.entries),
            'outbox': len(self.relay.outbox)
        }

    def restore(self, snapshot: Dict[str, Any]):
        self.token.restore(snapshot['token'])
        self.engine.restore(snapshot['engine'])
        self.ledger.restore(snapshot['ledger'])
        self.allocator.restore(snapshot['allocator'])
        self.assets.restore(snapshot['assets'])
        # Events and outbound messages of a failed operation never happened
        del self.events.entries[snapshot['events']:]
        del self.relay.outbox[snapshot['outbox']:]

    def _execute(self, operation: str, action: Callable[[], Any], **context) -> Any:
        try:
            return self.enforcer.enforce_action(operation, action, host=self, **context)
        finally:
            metrics.system_health_gauge.set(self.decision_ledger.health_score())
            metrics.update_token_health(
                self.token.get_reserve_fund(),
                self.token.get_insurance_funds(),
                self.token.get_total_supply()
            )

    # ============================================
    # LIQUIDITY
    # ============================================

    def provide_liquidity(self, caller: str, asset: str, amount: int) -> int:
        return self._execute(
            "provide_liquidity",
            lambda: self.engine.provide_liquidity(caller, asset, amount),
            caller=caller
        )

    def withdraw_liquidity(self, caller: str, asset: str, tokens_to_redeem: int) -> int:
        return self._execute(
            "withdraw_liquidity",
            lambda: self.engine.withdraw_liquidity(caller, asset, tokens_to_redeem),
            caller=caller
        )

    def set_engine_asset_allowed(self, caller: str, asset: str, allowed: bool):
        return self._execute(
            "set_engine_asset_allowed",
            lambda: self.engine.set_asset_allowed(caller, asset, allowed),
            caller=caller
        )

    # ============================================
    # TRADING
    # ============================================

    def deposit_asset(self, caller: str, asset: str, amount: int):
        return self._execute(
            "deposit_asset",
            lambda: self.ledger.deposit_asset(caller, asset, amount),
            caller=caller
        )

    def withdraw_asset(self, caller: str, asset: str, amount: int):
        return self._execute(
            "withdraw_asset",
            lambda: self.ledger.withdraw_asset(caller, asset, amount),
            caller=caller
        )

    def record_trading_loss(self, caller: str, loss_amount_usd: int) -> int:
        return self._execute(
            "record_trading_loss",
            lambda: self.ledger.record_trading_loss(caller, loss_amount_usd),
            caller=caller
        )

    def record_trading_profit(self, caller: str, profit_amount_usd: int):
        return self._execute(
            "record_trading_profit",
            lambda: self.ledger.record_trading_profit(caller, profit_amount_usd),
            caller=caller
        )

    def distribute_profits(self, caller: str) -> Tuple[int, int]:
        return self._execute(
            "distribute_profits",
            lambda: self.ledger.distribute_profits(caller),
            caller=caller
        )

    def sweep_to_collector(self, caller: str, now: Optional[datetime] = None) -> Dict[str, int]:
        return self._execute(
            "sweep_to_collector",
            lambda: self.ledger.sweep_to_collector(caller, now),
            caller=caller
        )

    def run_upkeep(self, caller: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Sweep if the ledger reports upkeep is due; otherwise do nothing."""
        if not self.ledger.check_upkeep(now):
            return {}
        return self.sweep_to_collector(caller, now)

    def set_ledger_asset_supported(self, caller: str, asset: str, supported: bool):
        return self._execute(
            "set_ledger_asset_supported",
            lambda: self.ledger.set_supported_asset(caller, asset, supported),
            caller=caller
        )

    # ============================================
    # CROSS-CHAIN
    # ============================================

    def receive_funds_from_trading_pool(self, caller: str) -> Dict[str, FundAllocation]:
        return self._execute(
            "receive_funds_from_trading_pool",
            lambda: self.allocator.receive_funds_from_trading_pool(caller),
            caller=caller
        )

    def deploy_to_nest_vault(self, caller: str, asset: str, amount: int) -> str:
        return self._execute(
            "deploy_to_nest_vault",
            lambda: self.allocator.deploy_to_nest_vault(caller, asset, amount),
            caller=caller
        )

    def execute_limit_order(self, caller: str, asset: str, amount: int,
                            limit_price: int = 0, is_buy: bool = True) -> str:
        return self._execute(
            "execute_limit_order",
            lambda: self.allocator.execute_limit_order(caller, asset, amount, limit_price, is_buy),
            caller=caller
        )

    def check_remote_profit(self, caller: str, destination_id: str, asset: str) -> str:
        return self._execute(
            "check_remote_profit",
            lambda: self.allocator.check_remote_profit(caller, destination_id, asset),
            caller=caller
        )

    def handle_response(self, caller: str, origin: str, payload) -> CrossChainRequest:
        return self._execute(
            "handle_response",
            lambda: self.allocator.handle_response(caller, origin, payload),
            caller=caller
        )

    def expire_request(self, caller: str, request_id: str) -> CrossChainRequest:
        return self._execute(
            "expire_request",
            lambda: self.allocator.expire_request(caller, request_id),
            caller=caller
        )

    def set_allocator_asset_supported(self, caller: str, asset: str, supported: bool):
        return self._execute(
            "set_allocator_asset_supported",
            lambda: self.allocator.set_supported_asset(caller, asset, supported),
            caller=caller
        )

    def set_profit_threshold(self, caller: str, threshold: int):
        return self._execute(
            "set_profit_threshold",
            lambda: self.allocator.set_profit_threshold(caller, threshold),
            caller=caller
        )

    # ============================================
    # REPORTING
    # ============================================

    def get_state(self) -> Dict:
        return {
            'token': {
                'total_supply': self.token.get_total_supply(),
                'reserve_fund': self.token.get_reserve_fund(),
                'insurance_funds': self.token.get_insurance_funds()
            },
            'engine': {
                'asset_reserves': dict(self.engine.asset_reserves),
                'total_backing_value': self.engine.total_backing_value,
                'total_insurance_backing': self.engine.total_insurance_backing,
                'total_losses_covered': self.engine.total_losses_covered,
                'provider_count': self.engine.get_provider_count()
            },
            'ledger': self.ledger.to_dict(),
            'allocator': self.allocator.to_dict()
        }

    def get_system_health(self) -> Dict:
        """Invariant enforcement health report."""
        total_checks = len(self.decision_ledger.entries)
        failed_checks = len(self.decision_ledger.failures())

        return {
            'total_invariant_checks': total_checks,
            'passed_checks': total_checks - failed_checks,
            'failed_checks': failed_checks,
            'health_score': self.decision_ledger.health_score(),
            'ledger_integrity': self.decision_ledger.verify_chain_integrity(),
            'pending_requests': len(self.allocator.get_pending_requests()),
            'events': len(self.events.entries)
        }

# ============================================
# DEMONSTRATION
# ============================================

def demonstrate_protocol():
    """Walk one provider, one loss and one vault round trip through the protocol."""

    print("\n" + "=" * 80)
    print("PULLEY PROTOCOL - SYSTEM DEMONSTRATION")
    print("=" * 80 + "\n")

    protocol = PulleyProtocol(ProtocolConfig.for_assets(["USDC"]))
    admin = protocol.admin
    engine_id = protocol.engine.identity
    ledger_id = protocol.ledger.identity
    allocator_id = protocol.allocator.identity

    # Provider deposits
    protocol.assets.mint("USDC", "alice", 1_000)
    protocol.assets.approve("USDC", "alice", engine_id, 1_000)
    minted = protocol.provide_liquidity("alice", "USDC", 1_000)
    print(f"✅ alice deposited 1,000 USDC, received {minted:,} tokens")

    # Trading pool funds the allocator, which tops up insurance
    protocol.assets.mint("USDC", "trader", 10_000)
    protocol.assets.approve("USDC", "trader", ledger_id, 10_000)
    protocol.deposit_asset("trader", "USDC", 10_000)
    protocol.assets.mint("USDC", allocator_id, 10_000)
    allocations = protocol.receive_funds_from_trading_pool(admin)
    print(f"✅ Allocated: {allocations['USDC'].to_dict()}")

    # Loss above threshold is covered by insurance
    covered = protocol.record_trading_loss(admin, 600)
    print(f"✅ Loss 600 covered={covered:,}, profit share={protocol.ledger.pulley_token_profit_share}%")

    # Vault round trip
    request_id = protocol.deploy_to_nest_vault(admin, "USDC", 2_000)
    protocol.relay.deliver(
        protocol.allocator.nest_vault_destination,
        (1, {'request_id': request_id, 'success': True, 'pnl': 1_200})
    )
    print(f"✅ Vault request {request_id[:12]} resolved")

    health = protocol.get_system_health()
    print(f"\nInvariant checks: {health['total_invariant_checks']} "
          f"(health {health['health_score']:.2%}, integrity {health['ledger_integrity']})")
    print("=" * 80 + "\n")

if __name__ == "__main__":
    demonstrate_protocol()
