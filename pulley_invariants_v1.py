"""
Pulley Protocol - Protocol Invariants
Version: 1.0.0

Checked by the InvariantEnforcer around every protocol operation.
Post-checks receive the protocol host and ``state_before['snapshot']``,
the per-component snapshot taken just before the action ran.
"""

from typing import Any, Dict, List

from pulley_enforcement_v1 import (
    Criticality,
    Invariant,
    InvariantType,
    logger
)
from pulley_cross_chain_v1 import RequestStatus

def _supply(token_snapshot: Dict[str, Any]) -> int:
    return sum(token_snapshot['balances'].values())

# ============================================
# WIRING INVARIANTS
# ============================================

class TokenWiring(Invariant):
    """INV-001: The token only trusts the engine and allocator it was wired to."""

    def __init__(self):
        super().__init__(
            id="inv_001_token_wiring",
            statement="It is FORBIDDEN to run an operation while token minter identities differ from the live engine and allocator",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="stable_token"
        )

    def pre_check(self, host, **kwargs) -> bool:
        wired = (
            host.token.engine == host.engine.identity
            and host.token.cross_chain == host.allocator.identity
        )
        if not wired:
            logger.critical(f"PRE-CHECK {self.id}: token wired to {host.token.engine}/{host.token.cross_chain}")
        return wired

    def post_check(self, result: Any, host, **kwargs) -> bool:
        return self.pre_check(host)

# ============================================
# STATE INVARIANTS
# ============================================

class NoNegativeBalances(Invariant):
    """INV-002: Stored balances and aggregates never go below zero."""

    def __init__(self):
        super().__init__(
            id="inv_002_no_negative_balances",
            statement="It is FORBIDDEN for any reserve, pool balance, allocation or aggregate to be negative",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_001_token_wiring"],
            owner="protocol"
        )

    def post_check(self, result: Any, host, **kwargs) -> bool:
        values: List[int] = []
        values.extend(host.engine.asset_reserves.values())
        values.extend([host.engine.total_backing_value, host.engine.total_insurance_backing])
        values.extend(host.ledger.pool_balances.values())
        values.append(host.ledger.total_pool_value)
        for bucket in (host.allocator.insurance_allocation, host.allocator.vault_allocation,
                       host.allocator.order_allocation):
            values.extend(bucket.values())
        values.extend([host.token.reserve_fund, host.token.insurance_funds])
        values.extend(host.token.balances.values())

        negatives = [v for v in values if v < 0]
        if negatives:
            logger.error(f"POST-CHECK {self.id}: negative values {negatives}")
        return not negatives

class EngineCustodyCoversReserves(Invariant):
    """INV-003: Engine custody holds at least the reserve it books per asset."""

    def __init__(self):
        super().__init__(
            id="inv_003_engine_custody",
            statement="Asset balance held by the engine MUST be >= its booked asset reserve",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_002_no_negative_balances"],
            owner="liquidity_engine"
        )

    def post_check(self, result: Any, host, **kwargs) -> bool:
        for asset, reserve in host.engine.asset_reserves.items():
            held = host.assets.balance_of(asset, host.engine.identity)
            if held < reserve:
                logger.error(f"POST-CHECK {self.id}: {asset} custody {held:,} < reserve {reserve:,}")
                return False
        return True

class ProviderClaimsBacked(Invariant):
    """INV-004: Provider claims never exceed total backing; roster and index agree."""

    def __init__(self):
        super().__init__(
            id="inv_004_provider_claims",
            statement="Sum of provider deposits MUST be <= total backing value and every provider MUST be indexed",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=["inv_002_no_negative_balances"],
            owner="liquidity_engine"
        )

    def post_check(self, result: Any, host, **kwargs) -> bool:
        engine = host.engine
        claims = sum(p.assets_deposited for p in engine.providers.values())
        indexed = all(
            engine.provider_roster[position] == address
            for address, position in engine.provider_index.items()
        )
        consistent = len(engine.provider_roster) == len(engine.providers) and indexed
        backed = claims <= engine.total_backing_value

        if not (consistent and backed):
            logger.error(f"POST-CHECK {self.id}: claims={claims:,}, backing={engine.total_backing_value:,}, roster_ok={consistent}")
        return consistent and backed

# ============================================
# FINANCIAL INVARIANTS
# ============================================

class MintBurnSymmetry(Invariant):
    """INV-101: Deposits and withdrawals move supply and reserve together."""

    OPERATIONS = {"provide_liquidity", "withdraw_liquidity"}

    def __init__(self):
        super().__init__(
            id="inv_101_mint_burn_symmetry",
            statement="Provider deposits and withdrawals MUST change token supply and reserve fund by the same amount",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_002_no_negative_balances"],
            owner="stable_token"
        )

    def post_check(self, result: Any, host, state_before: Dict[str, Any], **kwargs) -> bool:
        if state_before['operation'] not in self.OPERATIONS:
            return True

        before = state_before['snapshot']['token']
        supply_delta = host.token.get_total_supply() - _supply(before)
        reserve_delta = host.token.reserve_fund - before['reserve_fund']

        # Reserve clamps at zero once coverage has drained it below supply
        symmetric = supply_delta == reserve_delta or host.token.reserve_fund == 0

        logger.info(f"POST-CHECK {self.id}: supply_delta={supply_delta:,}, reserve_delta={reserve_delta:,}")
        return symmetric

class ProfitShareWithinBounds(Invariant):
    """INV-102: Profit share stays inside [20, 80]."""

    def __init__(self):
        super().__init__(
            id="inv_102_profit_share_bounds",
            statement="The insurance profit share MUST stay within [20, 80] percent",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="trading_ledger"
        )

    def post_check(self, result: Any, host, **kwargs) -> bool:
        ledger = host.ledger
        share = ledger.pulley_token_profit_share
        return ledger.MIN_PROFIT_SHARE <= share <= ledger.MAX_PROFIT_SHARE

class CoverageWithinInsurance(Invariant):
    """INV-103: Insurance funds never exceed the reserve they are part of."""

    def __init__(self):
        super().__init__(
            id="inv_103_coverage_within_insurance",
            statement="Insurance funds MUST be <= reserve fund",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.IMPORTANT,
            dependencies=["inv_002_no_negative_balances"],
            owner="stable_token"
        )

    def post_check(self, result: Any, host, **kwargs) -> bool:
        within = host.token.insurance_funds <= host.token.reserve_fund
        if not within:
            logger.error(
                f"POST-CHECK {self.id}: insurance {host.token.insurance_funds:,} > reserve {host.token.reserve_fund:,}"
            )
        return within

# ============================================
# CROSS-CHAIN INVARIANTS
# ============================================

class AllocationConserved(Invariant):
    """INV-201: A split loses nothing and gives insurance exactly its 10%."""

    def __init__(self):
        super().__init__(
            id="inv_201_allocation_conserved",
            statement="insurance + vault + orders MUST equal the amount split, with insurance = amount * 10 // 100",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="cross_chain_allocator"
        )

    def post_check(self, result: Any, host, state_before: Dict[str, Any], **kwargs) -> bool:
        if state_before['operation'] != "receive_funds_from_trading_pool":
            return True

        invested_before = state_before['snapshot']['allocator']['total_invested']
        split_total = 0
        for asset, allocation in result.items():
            if allocation.insurance != allocation.total * allocation.INSURANCE_PERCENT // 100:
                logger.error(f"POST-CHECK {self.id}: {asset} insurance bucket {allocation.insurance:,} off")
                return False
            split_total += allocation.total

        conserved = host.allocator.total_invested - invested_before == split_total
        logger.info(f"POST-CHECK {self.id}: split={split_total:,}, conserved={conserved}")
        return conserved

class RequestsSettleOnce(Invariant):
    """INV-202: A processed request id never returns to pending."""

    def __init__(self):
        super().__init__(
            id="inv_202_requests_settle_once",
            statement="It is FORBIDDEN for a processed request to be pending or to leave the processed set",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="cross_chain_allocator"
        )

    def post_check(self, result: Any, host, state_before: Dict[str, Any], **kwargs) -> bool:
        allocator = host.allocator
        processed_before = state_before['snapshot']['allocator']['processed_requests']

        if not processed_before <= allocator.processed_requests:
            logger.critical(f"POST-CHECK {self.id}: processed requests were forgotten")
            return False

        for request_id in allocator.processed_requests - processed_before:
            request = allocator.requests.get(request_id)
            if request is None or not request.processed or request.status == RequestStatus.DISPATCHED:
                logger.critical(f"POST-CHECK {self.id}: {request_id[:12]} processed but still pending")
                return False
        return True

def protocol_invariants() -> List[Invariant]:
    """Fresh instances of every protocol invariant."""
    return [
        TokenWiring(),
        NoNegativeBalances(),
        EngineCustodyCoversReserves(),
        ProviderClaimsBacked(),
        MintBurnSymmetry(),
        ProfitShareWithinBounds(),
        CoverageWithinInsurance(),
        AllocationConserved(),
        RequestsSettleOnce()
    ]
