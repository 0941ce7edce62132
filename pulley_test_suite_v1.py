"""
Pulley Protocol - Test Suite
Version: 1.0.0

- Unit tests (token, engine, ledger, enforcement primitives)
- Scenario tests (deposits, loss coverage, profit split, sweeps)
- Failure tests (rollback, reentrancy, permission refusals)
"""

import pytest
from datetime import datetime, timedelta

from pulley_config_v1 import ProtocolConfig, TradingLedgerConfig
from pulley_cross_chain_v1 import FundAllocation
from pulley_enforcement_v1 import (
    AllowListPermissionGate,
    AlreadyConfigured,
    AssetNotAllowed,
    Criticality,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,
    EventLog,
    InsufficientBalance,
    InsufficientReserveFund,
    InsufficientReserves,
    InsufficientTokens,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    InvariantViolation,
    NotPermitted,
    ReentrantCall,
    Snapshottable,
    SystemCompromised,
    TransferFailed,
    ZERO_ADDRESS,
    ZeroAddress,
    ZeroAmount,
    nonreentrant
)
from pulley_invariants_v1 import MintBurnSymmetry, ProfitShareWithinBounds
from pulley_protocol_v1 import PulleyProtocol
from pulley_stable_token_v1 import StableValueToken

ADMIN = "pulley-admin"
ASSET = "USDC"

# ============================================
# HELPERS
# ============================================

def build_protocol(**overrides) -> PulleyProtocol:
    return PulleyProtocol(ProtocolConfig.for_assets([ASSET, "USDT"], **overrides))

def fund(protocol, account, amount, spender, asset=ASSET):
    protocol.assets.mint(asset, account, amount)
    protocol.assets.approve(asset, account, spender, amount)

def provide(protocol, provider, amount, asset=ASSET):
    fund(protocol, provider, amount, protocol.engine.identity, asset)
    return protocol.provide_liquidity(provider, asset, amount)

def seed_pool(protocol, trader, amount, asset=ASSET):
    fund(protocol, trader, amount, protocol.ledger.identity, asset)
    protocol.deposit_asset(trader, asset, amount)

def seed_insurance(protocol, amount, asset=ASSET):
    """Route funds through the allocator; 10% ends up as insurance."""
    protocol.assets.mint(asset, protocol.allocator.identity, amount)
    return protocol.receive_funds_from_trading_pool(ADMIN)

# ============================================
# MOCK SERVICES
# ============================================

class MockCounter(Snapshottable):
    """Minimal snapshottable host."""

    SNAPSHOT_FIELDS = ("value",)

    def __init__(self):
        self.value = 0

    @nonreentrant
    def bump(self, amount: int, callback=None):
        self.value += amount
        if callback:
            callback()
        return self.value

class CounterBelowLimit(Invariant):
    LIMIT = 5

    def __init__(self, dependencies=None, id="inv_counter_limit"):
        super().__init__(
            id=id,
            statement="Counter MUST stay below limit",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=dependencies or [],
            owner="tests"
        )

    def post_check(self, result, host, **kwargs) -> bool:
        return host.value <= self.LIMIT

class MockShareHost:
    """Only what ProfitShareWithinBounds reads."""

    class Ledger:
        MIN_PROFIT_SHARE = 20
        MAX_PROFIT_SHARE = 80

        def __init__(self, share):
            self.pulley_token_profit_share = share

    def __init__(self, share):
        self.ledger = self.Ledger(share)

# ============================================
# ENFORCEMENT PRIMITIVES
# ============================================

class TestPermissionGate:
    """Allow-list keyed by (caller, operation)."""

    def test_grant_and_revoke(self):
        gate = AllowListPermissionGate()
        assert gate.has_permission("alice", "op") == False

        gate.grant("alice", "op")
        assert gate.has_permission("alice", "op") == True

        gate.revoke("alice", "op")
        with pytest.raises(NotPermitted):
            gate.require("alice", "op")

    def test_wildcard_opens_operation_to_everyone(self):
        gate = AllowListPermissionGate([(AllowListPermissionGate.WILDCARD, "public")])
        assert gate.has_permission("anyone", "public")
        assert not gate.has_permission("anyone", "private")

class TestEventLog:

    def test_named_and_last(self):
        events = EventLog()
        events.emit("token", "Mint", amount=1)
        events.emit("token", "Burn", amount=2)
        events.emit("token", "Mint", amount=3)

        assert len(events.named("Mint")) == 2
        assert events.last("Mint").data == {'amount': 3}
        assert events.last().name == "Mint"
        assert events.last("Missing") is None

class TestNonReentrant:

    def test_recursive_entry_rejected(self):
        counter = MockCounter()

        with pytest.raises(ReentrantCall):
            counter.bump(1, callback=lambda: counter.bump(1))

        # Guard is released after the failed call
        assert counter.bump(2) == 3

class TestInvariantEnforcer:

    def test_post_check_failure_restores_host(self):
        counter = MockCounter()
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([CounterBelowLimit()], ledger)

        enforcer.enforce_action("bump", lambda: counter.bump(3), host=counter)
        assert counter.value == 3

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action("bump", lambda: counter.bump(10), host=counter)

        assert counter.value == 3
        assert len(ledger.failures()) == 1

    def test_action_exception_restores_host_and_reports_rollback(self):
        counter = MockCounter()
        rollbacks = []
        enforcer = InvariantEnforcer([], DecisionLedger(), on_rollback=rollbacks.append)

        def explode():
            counter.bump(2)
            raise TransferFailed("boom")

        with pytest.raises(TransferFailed):
            enforcer.enforce_action("explode", explode, host=counter)

        assert counter.value == 0
        assert rollbacks == ["explode"]

    def test_checks_reported_to_callback(self):
        seen = []
        enforcer = InvariantEnforcer([CounterBelowLimit()], DecisionLedger(),
                                     on_check=lambda *args: seen.append(args))
        counter = MockCounter()

        enforcer.enforce_action("bump", lambda: counter.bump(1), host=counter)

        assert seen == [("inv_counter_limit", "PRE", True), ("inv_counter_limit", "POST", True)]

    def test_circular_dependencies_rejected(self):
        a = CounterBelowLimit(dependencies=["b"], id="a")
        b = CounterBelowLimit(dependencies=["a"], id="b")

        with pytest.raises(InvariantViolation):
            InvariantEnforcer([a, b], DecisionLedger())

class TestDecisionLedger:

    def test_forged_decision_rejected(self):
        ledger = DecisionLedger()
        decision = EnforcementDecision(
            invariant_id="inv_x",
            check_type="POST",
            result=True,
            action=EnforcementResult.PROCEED,
            timestamp=datetime.now(),
            operation="op",
            signature="0" * 64
        )

        with pytest.raises(SystemCompromised):
            ledger.record(decision)

    def test_health_score_empty(self):
        assert DecisionLedger().health_score() == 1.0

# ============================================
# STABLE VALUE TOKEN
# ============================================

class TestStableValueToken:

    def make_token(self):
        token = StableValueToken(ADMIN)
        token.set_engine(ADMIN, "engine")
        token.set_cross_chain(ADMIN, "xchain")
        return token

    def test_engine_mint_moves_supply_and_reserve_together(self):
        token = self.make_token()
        token.mint("engine", "alice", 500)

        assert token.get_total_supply() == 500
        assert token.get_reserve_fund() == 500
        assert token.get_insurance_funds() == 0
        assert token.balance_of("alice") == 500
        assert token.events.last("Mint").data == {'to': "alice", 'amount': 500}

    def test_cross_chain_mint_books_insurance(self):
        token = self.make_token()
        token.mint("xchain", "xchain", 300)

        assert token.get_insurance_funds() == 300
        assert token.can_cover_loss(300) == True
        assert token.can_cover_loss(301) == False

    def test_mint_rejects_strangers_and_bad_input(self):
        token = self.make_token()

        with pytest.raises(NotPermitted):
            token.mint("mallory", "mallory", 10)
        with pytest.raises(ZeroAmount):
            token.mint("engine", "alice", 0)
        with pytest.raises(ZeroAddress):
            token.mint("engine", ZERO_ADDRESS, 10)

    def test_identities_set_once_by_admin(self):
        token = StableValueToken(ADMIN)

        with pytest.raises(NotPermitted):
            token.set_engine("mallory", "engine")

        token.set_engine(ADMIN, "engine")
        with pytest.raises(AlreadyConfigured):
            token.set_engine(ADMIN, "other-engine")

    def test_burn_clamps_reserve_at_zero(self):
        token = self.make_token()
        token.mint("xchain", "xchain", 100)
        token.burn_for_coverage("engine", 60)

        assert token.get_reserve_fund() == 40
        assert token.get_insurance_funds() == 40

        token.burn("engine", "xchain", 100)

        assert token.get_reserve_fund() == 0
        assert token.balance_of("xchain") == 0

    def test_cross_chain_burn_draws_down_insurance(self):
        token = self.make_token()
        token.mint("xchain", "xchain", 300)

        token.burn("xchain", "xchain", 120)

        assert token.get_insurance_funds() == 180
        assert token.get_reserve_fund() == 180
        assert token.balance_of("xchain") == 180

    def test_cross_chain_burn_beyond_insurance_leaves_it_alone(self):
        token = self.make_token()
        token.mint("xchain", "xchain", 100)
        token.mint("engine", "xchain", 400)

        token.burn("xchain", "xchain", 250)

        assert token.get_insurance_funds() == 100
        assert token.get_reserve_fund() == 250
        assert token.balance_of("xchain") == 250

    def test_engine_burn_never_touches_insurance(self):
        token = self.make_token()
        token.mint("xchain", "xchain", 100)

        token.burn("engine", "xchain", 50)

        assert token.get_insurance_funds() == 100
        assert token.get_reserve_fund() == 50

    def test_burn_more_than_balance(self):
        token = self.make_token()
        token.mint("engine", "alice", 10)

        with pytest.raises(InsufficientBalance):
            token.burn("engine", "alice", 11)

    def test_coverage_burn_needs_insurance(self):
        token = self.make_token()
        token.mint("engine", "alice", 1_000)

        with pytest.raises(InsufficientReserveFund):
            token.burn_for_coverage("engine", 1)
        with pytest.raises(NotPermitted):
            token.burn_for_coverage("xchain", 1)

    def test_update_reserve_fund(self):
        token = self.make_token()
        token.update_reserve_fund("engine", 50, True)
        assert token.get_reserve_fund() == 50

        token.update_reserve_fund("engine", 80, False)
        assert token.get_reserve_fund() == 0
        assert token.get_total_supply() == 0

# ============================================
# LIQUIDITY ENGINE
# ============================================

class TestLiquidityEngine:

    def test_deposit_then_partial_withdrawal(self):
        """1000 in, 300 tokens redeemed: ~300 back, claim left at 700."""
        protocol = build_protocol()

        minted = provide(protocol, "alice", 1_000)

        assert minted == 1_000
        assert protocol.token.balance_of("alice") == 1_000
        assert protocol.engine.get_asset_reserve(ASSET) == 1_000
        assert protocol.engine.get_provider("alice").assets_deposited == 1_000

        returned = protocol.withdraw_liquidity("alice", ASSET, 300)

        provider = protocol.engine.get_provider("alice")
        assert returned == 300
        assert provider.assets_deposited == 700
        assert provider.pulley_tokens_owned == 700
        assert protocol.engine.get_asset_reserve(ASSET) == 700
        assert protocol.assets.balance_of(ASSET, "alice") == 300

    def test_insurance_backing_mint_books_insurance(self):
        protocol = build_protocol()

        seed_insurance(protocol, 10_000)

        engine = protocol.engine
        assert engine.total_insurance_backing == 1_000
        assert engine.get_asset_reserve(ASSET) == 1_000
        assert protocol.token.get_insurance_funds() == 1_000
        assert protocol.token.balance_of(protocol.allocator.identity) == 1_000
        assert protocol.events.last("InsuranceBackingAdded").data == {
            'allocator': protocol.allocator.identity, 'asset': ASSET, 'amount': 1_000
        }

    def test_roster_keeps_empty_providers(self):
        protocol = build_protocol()
        provide(protocol, "alice", 100)
        provide(protocol, "alice", 50)
        provide(protocol, "bob", 10)

        assert protocol.engine.get_provider_count() == 2

        protocol.withdraw_liquidity("alice", ASSET, 150)

        assert protocol.engine.get_provider_count() == 2
        assert protocol.engine.get_provider("alice").is_active == False
        assert [p.address for p in protocol.engine.get_providers(active_only=True)] == ["bob"]

    @pytest.mark.parametrize("steps", [
        [("provide", 1_000), ("withdraw", 300), ("withdraw", 700)],
        [("provide", 7), ("provide", 13), ("withdraw", 11)],
        [("provide", 999_999), ("withdraw", 1), ("provide", 1), ("withdraw", 999_998)],
    ])
    def test_supply_tracks_reserve(self, steps):
        protocol = build_protocol()

        for kind, amount in steps:
            if kind == "provide":
                provide(protocol, "alice", amount)
            else:
                reserve_before = protocol.engine.get_asset_reserve(ASSET)
                tokens_before = protocol.engine.get_provider("alice").pulley_tokens_owned
                returned = protocol.withdraw_liquidity("alice", ASSET, amount)
                assert protocol.engine.get_asset_reserve(ASSET) == reserve_before - returned
                assert protocol.engine.get_provider("alice").pulley_tokens_owned == tokens_before - amount
                assert abs(returned - amount) <= 1

            assert protocol.token.get_total_supply() == protocol.token.get_reserve_fund()

    def test_withdraw_validation(self):
        protocol = build_protocol()
        provide(protocol, "alice", 100)

        with pytest.raises(InsufficientTokens):
            protocol.withdraw_liquidity("alice", ASSET, 101)
        with pytest.raises(ZeroAmount):
            protocol.withdraw_liquidity("alice", ASSET, 0)
        with pytest.raises(AssetNotAllowed):
            protocol.withdraw_liquidity("alice", "DAI", 10)
        with pytest.raises(InsufficientReserves):
            protocol.withdraw_liquidity("alice", "USDT", 10)

    def test_deposit_without_allowance_changes_nothing(self):
        protocol = build_protocol()
        protocol.assets.mint(ASSET, "alice", 100)

        with pytest.raises(TransferFailed):
            protocol.provide_liquidity("alice", ASSET, 100)

        assert protocol.engine.get_provider("alice") is None
        assert protocol.token.get_total_supply() == 0
        assert protocol.events.named("LiquidityProvided") == []

    def test_disallowed_asset(self):
        protocol = build_protocol()
        protocol.set_engine_asset_allowed(ADMIN, "USDT", False)

        with pytest.raises(AssetNotAllowed):
            provide(protocol, "alice", 10, asset="USDT")
        with pytest.raises(NotPermitted):
            protocol.set_engine_asset_allowed("mallory", "USDT", True)

    def test_loss_coverage_requires_permission(self):
        protocol = build_protocol()

        with pytest.raises(NotPermitted):
            protocol.engine.cover_trading_loss("mallory", 10)

    def test_insurance_deposit_books_insurance(self):
        protocol = build_protocol()
        seed_insurance(protocol, 10_000)

        assert protocol.engine.total_insurance_backing == 1_000
        assert protocol.engine.get_insurance_capacity() == 1_000
        assert protocol.engine.get_asset_reserve(ASSET) == 1_000
        assert protocol.engine.get_provider_count() == 0
        assert protocol.token.balance_of(protocol.allocator.identity) == 1_000

# ============================================
# TRADING LEDGER
# ============================================

class TestTradingLedger:

    def test_deposit_and_withdraw(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 500)

        protocol.withdraw_asset("trader", ASSET, 200)

        assert protocol.ledger.get_user_balance("trader", ASSET) == 300
        assert protocol.ledger.get_pool_balance(ASSET) == 300
        assert protocol.ledger.total_pool_value == 300
        assert protocol.assets.balance_of(ASSET, "trader") == 200

        with pytest.raises(InsufficientBalance):
            protocol.withdraw_asset("trader", ASSET, 400)
        with pytest.raises(AssetNotAllowed):
            seed_pool(protocol, "trader", 10, asset="DAI")

    def test_covered_loss_above_threshold(self):
        """Pool 10,000, loss 600 (6%) with insurance: pool value unchanged."""
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)
        seed_insurance(protocol, 10_000)

        covered = protocol.record_trading_loss(ADMIN, 600)

        assert covered == 600
        assert protocol.ledger.total_pool_value == 10_000
        assert protocol.ledger.total_losses_covered_by_pulley == 600
        assert protocol.ledger.pulley_token_profit_share == 80
        assert protocol.token.get_insurance_funds() == 400
        assert protocol.engine.total_insurance_backing == 400
        assert protocol.engine.total_losses_covered == 600

    def test_loss_below_threshold_hits_pool(self):
        """Loss of 200 (2%) never asks for coverage."""
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)
        seed_insurance(protocol, 10_000)

        covered = protocol.record_trading_loss(ADMIN, 200)

        assert covered == 0
        assert protocol.ledger.total_pool_value == 9_800
        assert protocol.token.get_insurance_funds() == 1_000
        assert protocol.ledger.pulley_token_profit_share == 20

    def test_uncoverable_loss_absorbed_by_pool(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)

        covered = protocol.record_trading_loss(ADMIN, 600)

        assert covered == 0
        assert protocol.ledger.total_pool_value == 9_400
        assert protocol.ledger.total_trading_losses == 600

    def test_pool_value_clamps_at_zero(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 1_000)

        protocol.record_trading_loss(ADMIN, 5_000)

        assert protocol.ledger.total_pool_value == 0

    @pytest.mark.parametrize("losses", [
        [600, 200, 5_000],
        [100, 100, 100, 100],
        [501, 9_000, 1],
    ])
    def test_profit_share_stays_in_bounds(self, losses):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)
        seed_insurance(protocol, 20_000)

        for loss in losses:
            protocol.record_trading_loss(ADMIN, loss)
            assert 20 <= protocol.ledger.pulley_token_profit_share <= 80

    def test_profit_goes_to_pool_until_a_loss_is_covered(self):
        protocol = build_protocol()
        protocol.record_trading_profit(ADMIN, 1_000)

        assert protocol.ledger.pending_profit_distribution == 1_000
        assert protocol.distribute_profits(ADMIN) == (0, 1_000)
        assert protocol.ledger.pending_profit_distribution == 0
        assert protocol.distribute_profits(ADMIN) == (0, 0)

    def test_profit_split_after_coverage(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)
        seed_insurance(protocol, 10_000)
        protocol.record_trading_loss(ADMIN, 600)

        protocol.record_trading_profit(ADMIN, 1_000)
        pulley_share, pool_share = protocol.distribute_profits(ADMIN)

        assert (pulley_share, pool_share) == (800, 200)
        assert protocol.engine.total_backing_value == 800
        assert protocol.token.get_reserve_fund() == 1_000 - 600 + 800

    def test_profit_recording_is_gated(self):
        protocol = build_protocol()

        with pytest.raises(NotPermitted):
            protocol.record_trading_profit("mallory", 10)
        with pytest.raises(ZeroAmount):
            protocol.record_trading_profit(ADMIN, 0)

    def test_loss_beyond_engine_backing_is_absorbed_by_pool(self):
        """Token insurance above engine backing: coverage declines, the pool takes the loss."""
        protocol = build_protocol()
        seed_pool(protocol, "trader", 10_000)
        protocol.token.mint(protocol.allocator.identity, protocol.allocator.identity, 1_000)

        covered = protocol.record_trading_loss(ADMIN, 600)

        assert covered == 0
        assert protocol.ledger.total_trading_losses == 600
        assert protocol.ledger.total_losses_covered_by_pulley == 0
        assert protocol.ledger.total_pool_value == 9_400
        assert protocol.engine.total_insurance_backing == 0
        assert protocol.token.get_insurance_funds() == 1_000

    def test_engine_declines_coverage_without_backing(self):
        protocol = build_protocol()
        protocol.token.mint(protocol.allocator.identity, protocol.allocator.identity, 1_000)

        assert protocol.engine.cover_trading_loss(protocol.ledger.identity, 600) == False
        assert protocol.engine.total_losses_covered == 0

    def test_supported_asset_swap_remove(self):
        protocol = build_protocol()
        protocol.set_ledger_asset_supported(ADMIN, "DAI", True)
        protocol.set_ledger_asset_supported(ADMIN, ASSET, False)

        ledger = protocol.ledger
        assert not ledger.is_supported(ASSET)
        assert sorted(ledger.supported_assets) == ["DAI", "USDT"]
        for asset, position in ledger.supported_index.items():
            assert ledger.supported_assets[position] == asset

class TestSweep:

    def sweep_protocol(self):
        return build_protocol(ledger=TradingLedgerConfig(sweep_threshold=100, sweep_multiplier=50))

    def test_sweep_moves_qualifying_balances(self):
        protocol = self.sweep_protocol()
        seed_pool(protocol, "trader", 6_000)
        seed_pool(protocol, "trader", 4_000, asset="USDT")
        now = datetime(2026, 1, 1, 12, 0)

        assert protocol.ledger.check_upkeep(now) == True

        swept = protocol.sweep_to_collector(ADMIN, now)

        collector = protocol.config.ledger.collector_address
        assert swept == {ASSET: 6_000}
        assert protocol.assets.balance_of(ASSET, collector) == 6_000
        assert protocol.ledger.get_pool_balance(ASSET) == 0
        assert protocol.ledger.get_pool_balance("USDT") == 4_000
        assert protocol.ledger.total_pool_value == 4_000

    def test_sweep_runs_once_per_interval(self):
        protocol = self.sweep_protocol()
        seed_pool(protocol, "trader", 6_000)
        now = datetime(2026, 1, 1, 12, 0)
        protocol.sweep_to_collector(ADMIN, now)

        seed_pool(protocol, "trader", 6_000)
        later = now + timedelta(hours=1)

        assert protocol.ledger.check_upkeep(later) == False
        assert protocol.run_upkeep(ADMIN, later) == {}
        assert protocol.sweep_to_collector(ADMIN, later) == {}

        next_day = now + timedelta(days=1)
        assert protocol.run_upkeep(ADMIN, next_day) == {ASSET: 6_000}

    def test_sweep_is_gated(self):
        protocol = self.sweep_protocol()
        seed_pool(protocol, "trader", 6_000)

        with pytest.raises(NotPermitted):
            protocol.sweep_to_collector("mallory")

# ============================================
# INVARIANTS
# ============================================

class TestProtocolInvariants:

    @pytest.mark.parametrize("share,expected", [(20, True), (80, True), (19, False), (81, False)])
    def test_profit_share_bounds(self, share, expected):
        inv = ProfitShareWithinBounds()
        assert inv.post_check(None, host=MockShareHost(share)) == expected

    def test_mint_burn_symmetry_ignores_other_operations(self):
        inv = MintBurnSymmetry()
        state_before = {'operation': "record_trading_loss", 'snapshot': {}}
        assert inv.post_check(None, host=None, state_before=state_before) == True

    def test_health_after_normal_operations(self):
        protocol = build_protocol()
        provide(protocol, "alice", 1_000)
        seed_pool(protocol, "trader", 10_000)
        seed_insurance(protocol, 10_000)
        protocol.record_trading_loss(ADMIN, 600)

        health = protocol.get_system_health()

        assert health['failed_checks'] == 0
        assert health['health_score'] == 1.0
        assert health['ledger_integrity'] == True
        assert health['total_invariant_checks'] > 0

# ============================================
# ROLLBACK & REENTRANCY
# ============================================

class TestRollbackMechanisms:

    def test_reentrant_withdrawal_rejected_and_rolled_back(self):
        """A recipient hook re-entering the engine aborts the whole withdrawal."""
        protocol = build_protocol()
        provide(protocol, "alice", 1_000)
        fund(protocol, "alice", 10, protocol.engine.identity)

        def reenter(asset, sender, recipient, amount):
            protocol.provide_liquidity("alice", ASSET, 10)

        protocol.assets.on_receive("alice", reenter)

        with pytest.raises(ReentrantCall):
            protocol.withdraw_liquidity("alice", ASSET, 500)

        assert protocol.engine.get_provider("alice").pulley_tokens_owned == 1_000
        assert protocol.engine.get_asset_reserve(ASSET) == 1_000
        assert protocol.token.balance_of("alice") == 1_000
        assert protocol.assets.balance_of(ASSET, "alice") == 10

        protocol.assets.on_receive("alice", None)
        assert protocol.withdraw_liquidity("alice", ASSET, 500) == 500

    def test_reconciler_reentering_ledger_rejected(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 500)
        protocol.ledger.pnl_reconciler = lambda: protocol.ledger.record_trading_profit(
            protocol.allocator.identity, 10
        )

        with pytest.raises(ReentrantCall):
            protocol.withdraw_asset("trader", ASSET, 100)

        assert protocol.ledger.get_user_balance("trader", ASSET) == 500
        assert protocol.ledger.total_trading_profits == 0

    def test_reconciler_runs_before_withdrawal(self):
        protocol = build_protocol()
        seed_pool(protocol, "trader", 500)
        calls = []
        protocol.ledger.pnl_reconciler = lambda: calls.append(protocol.ledger.get_user_balance("trader", ASSET))

        protocol.withdraw_asset("trader", ASSET, 100)

        assert calls == [500]

    def test_failed_operation_leaves_no_events(self):
        protocol = build_protocol()
        provide(protocol, "alice", 1_000)
        events_before = len(protocol.events.entries)

        def refuse(asset, sender, recipient, amount):
            raise TransferFailed("recipient refuses funds")

        protocol.assets.on_receive("alice", refuse)

        with pytest.raises(TransferFailed):
            protocol.withdraw_liquidity("alice", ASSET, 100)

        assert len(protocol.events.entries) == events_before
        assert protocol.token.get_total_supply() == 1_000
        assert protocol.engine.get_asset_reserve(ASSET) == 1_000

    def test_transfer_log_truncated_not_copied(self):
        protocol = build_protocol()
        provide(protocol, "alice", 1_000)
        transfers_before = list(protocol.assets.transfers)

        snapshot = protocol.assets.snapshot()
        assert 'transfers' not in snapshot
        assert snapshot['_lengths'] == {'transfers': len(transfers_before)}

        def refuse(asset, sender, recipient, amount):
            raise TransferFailed("recipient refuses funds")

        protocol.assets.on_receive("alice", refuse)

        with pytest.raises(TransferFailed):
            protocol.withdraw_liquidity("alice", ASSET, 100)

        assert protocol.assets.transfers == transfers_before

class TestFundAllocationSplit:

    @pytest.mark.parametrize("amount", [1, 9, 10, 99, 1_001, 123_457, 10 ** 24 + 7])
    def test_parts_sum_exactly(self, amount):
        allocation = FundAllocation.split(amount)

        assert allocation.total == amount
        assert abs(allocation.insurance * 100 - amount * 10) <= 100
        assert allocation.vault >= allocation.orders

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
