"""
Pulley Protocol - Cross-Chain Test Suite
Version: 1.0.0

Fund splitting, request dispatch, response reconciliation, replay
protection and expiry for the cross-chain allocator.
"""

import pytest

from pulley_config_v1 import ProtocolConfig
from pulley_cross_chain_v1 import RequestStatus
from pulley_enforcement_v1 import (
    AssetNotAllowed,
    InsufficientFunds,
    InvalidMessageType,
    InvalidSourceChain,
    NotPermitted,
    RequestAlreadyProcessed,
    RequestNotFound,
    ValidationError,
    ZeroAmount
)
from pulley_messaging_v1 import CrossChainPayload, InMemoryRelay, MessageType, response_payload
from pulley_protocol_v1 import PulleyProtocol

ADMIN = "pulley-admin"
RELAYER = "pulley-relayer"
ASSET = "USDC"
VAULT = "nest-vault-chain"
ORDERS = "limit-order-chain"

# ============================================
# HELPERS
# ============================================

def build_protocol() -> PulleyProtocol:
    return PulleyProtocol(ProtocolConfig.for_assets([ASSET, "USDT"]))

def allocated_protocol(pool: int = 10_000, allocate: int = 10_000) -> PulleyProtocol:
    """Pool of `pool` units; allocator has split `allocate` units 1,000/4,500/4,500."""
    protocol = build_protocol()
    if pool:
        protocol.assets.mint(ASSET, "trader", pool)
        protocol.assets.approve(ASSET, "trader", protocol.ledger.identity, pool)
        protocol.deposit_asset("trader", ASSET, pool)
    protocol.assets.mint(ASSET, protocol.allocator.identity, allocate)
    protocol.receive_funds_from_trading_pool(ADMIN)
    return protocol

def respond(protocol, origin, message_type, request_id, success=True, pnl=0):
    return protocol.relay.deliver(origin, response_payload(message_type, request_id, success, pnl))

# ============================================
# MESSAGING
# ============================================

class TestPayloadCodec:

    def test_decode_tuple(self):
        payload = CrossChainPayload.decode((1, {'request_id': "abc", 'success': True}))

        assert payload.message_type == MessageType.DEPOSIT_TO_VAULT
        assert payload.data['request_id'] == "abc"
        assert payload.encode() == (1, {'request_id': "abc", 'success': True})

    @pytest.mark.parametrize("raw", [(9, {}), ("x",), None, (1, "not-a-mapping")])
    def test_undecodable_payloads(self, raw):
        with pytest.raises(InvalidMessageType):
            CrossChainPayload.decode(raw)

    def test_send_logs_non_string_request_id(self):
        relay = InMemoryRelay()

        message = relay.send(VAULT, CrossChainPayload.decode((3, {'request_id': 5})))

        assert message.request_id == 5
        assert len(relay.outbox) == 1

    @pytest.mark.parametrize("request_id", [5, None, ["a"]])
    def test_non_string_request_id_rejected(self, request_id):
        protocol = allocated_protocol()

        with pytest.raises(InvalidMessageType):
            protocol.relay.deliver(VAULT, (1, {'request_id': request_id, 'success': True}))

        assert protocol.allocator.processed_requests == set()

    def test_relay_needs_handler(self):
        relay = InMemoryRelay()

        with pytest.raises(RuntimeError):
            relay.deliver(VAULT, (1, {}))

# ============================================
# FUND ALLOCATION
# ============================================

class TestReceiveFunds:

    def test_split_and_insurance_forwarding(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator

        allocation = allocator.get_allocation(ASSET)
        assert (allocation.insurance, allocation.vault, allocation.orders) == (1_000, 4_500, 4_500)
        assert allocator.total_invested == 10_000
        assert protocol.token.get_insurance_funds() == 1_000
        assert protocol.assets.balance_of(ASSET, allocator.identity) == 9_000
        assert protocol.events.last("FundsAllocated").data['amount'] == 10_000

    def test_only_new_funds_are_split(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator

        assert protocol.receive_funds_from_trading_pool(ADMIN) == {}
        assert allocator.total_invested == 10_000

        protocol.assets.mint(ASSET, allocator.identity, 1_001)
        allocations = protocol.receive_funds_from_trading_pool(ADMIN)

        assert allocations[ASSET].to_dict() == {'insurance': 100, 'vault': 451, 'orders': 450}
        assert allocator.get_allocation(ASSET).to_dict() == {'insurance': 1_100, 'vault': 4_951, 'orders': 4_950}
        assert allocator.total_invested == 11_001
        assert protocol.engine.total_insurance_backing == 1_100

    def test_tiny_amount_has_no_insurance_bucket(self):
        protocol = build_protocol()
        protocol.assets.mint(ASSET, protocol.allocator.identity, 5)

        allocations = protocol.receive_funds_from_trading_pool(ADMIN)

        assert allocations[ASSET].to_dict() == {'insurance': 0, 'vault': 3, 'orders': 2}
        assert protocol.engine.total_insurance_backing == 0
        assert protocol.token.get_insurance_funds() == 0

    def test_requires_permission(self):
        protocol = build_protocol()

        with pytest.raises(NotPermitted):
            protocol.receive_funds_from_trading_pool("mallory")

# ============================================
# DISPATCH
# ============================================

class TestDispatch:

    def test_vault_deployment_precommits_allocation(self):
        protocol = allocated_protocol()

        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        request = protocol.allocator.get_request(request_id)
        message = protocol.relay.outbox[-1]
        assert len(request_id) == 64
        assert request.status == RequestStatus.DISPATCHED
        assert request.destination_id == VAULT
        assert protocol.allocator.get_allocation(ASSET).vault == 2_500
        assert message.destination == VAULT
        assert message.payload.message_type == MessageType.DEPOSIT_TO_VAULT
        assert message.request_id == request_id

    def test_request_ids_are_unique(self):
        protocol = allocated_protocol()

        first = protocol.deploy_to_nest_vault(ADMIN, ASSET, 100)
        second = protocol.deploy_to_nest_vault(ADMIN, ASSET, 100)

        assert first != second
        assert len(protocol.allocator.get_pending_requests()) == 2

    def test_vault_deployment_above_allocation(self):
        protocol = allocated_protocol()

        with pytest.raises(InsufficientFunds):
            protocol.deploy_to_nest_vault(ADMIN, ASSET, 5_000)

        assert protocol.allocator.get_allocation(ASSET).vault == 4_500
        assert protocol.allocator.requests == {}
        assert protocol.relay.outbox == []

    def test_dispatch_validation(self):
        protocol = allocated_protocol()

        with pytest.raises(AssetNotAllowed):
            protocol.deploy_to_nest_vault(ADMIN, "DAI", 10)
        with pytest.raises(ZeroAmount):
            protocol.execute_limit_order(ADMIN, ASSET, 0)
        with pytest.raises(ValidationError):
            protocol.check_remote_profit(ADMIN, "unknown-chain", ASSET)
        with pytest.raises(NotPermitted):
            protocol.execute_limit_order("mallory", ASSET, 10)

    def test_limit_order_carries_order_terms(self):
        protocol = allocated_protocol()

        protocol.execute_limit_order(ADMIN, ASSET, 1_000, limit_price=99, is_buy=False)

        message = protocol.relay.outbox[-1]
        assert message.destination == ORDERS
        assert message.payload.data['limit_price'] == 99
        assert message.payload.data['is_buy'] == False
        assert protocol.allocator.get_allocation(ASSET).orders == 4_500

# ============================================
# RESPONSE RECONCILIATION
# ============================================

class TestHandleResponse:

    def test_vault_profit_above_threshold_is_distributed(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        request = respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=1_200)

        assert request.status == RequestStatus.RESOLVED
        assert request_id in allocator.processed_requests
        assert allocator.vault_profits[ASSET] == 0
        assert allocator.get_allocation(ASSET).insurance == 1_012
        assert allocator.total_trader_share == 1_188
        assert protocol.events.last("ProfitThresholdReached").data['amount'] == 1_200
        assert protocol.ledger.total_trading_profits == 1_200
        assert protocol.ledger.pending_profit_distribution == 1_200

    def test_vault_profit_accumulates_below_threshold(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator
        first = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)
        second = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)

        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, first, pnl=300)

        assert allocator.vault_profits[ASSET] == 300
        assert protocol.events.named("ProfitThresholdReached") == []

        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, second, pnl=800)

        assert allocator.vault_profits[ASSET] == 0
        assert allocator.get_allocation(ASSET).insurance == 1_011

    def test_vault_failure_restores_allocation(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, success=False)

        assert protocol.allocator.get_allocation(ASSET).vault == 4_500
        assert protocol.allocator.get_request(request_id).status == RequestStatus.RESOLVED
        assert protocol.ledger.total_trading_profits == 0
        assert protocol.ledger.total_trading_losses == 0

    def test_limit_order_loss_reported_to_ledger(self):
        protocol = allocated_protocol()
        request_id = protocol.execute_limit_order(ADMIN, ASSET, 1_000)

        respond(protocol, ORDERS, MessageType.LIMIT_ORDER, request_id, pnl=-50)

        assert protocol.allocator.order_profits == -50
        assert protocol.ledger.total_trading_losses == 50
        assert protocol.ledger.total_pool_value == 9_950

    def test_limit_order_profit_above_threshold(self):
        protocol = allocated_protocol()
        request_id = protocol.execute_limit_order(ADMIN, ASSET, 1_000)

        respond(protocol, ORDERS, MessageType.LIMIT_ORDER, request_id, pnl=2_000)

        assert protocol.allocator.order_profits == 0
        assert protocol.events.last("ProfitThresholdReached").data['bucket'] == "orders"
        assert protocol.allocator.get_allocation(ASSET).insurance == 1_020

    def test_profit_check_loss_covered_by_insurance_bucket(self):
        protocol = allocated_protocol()
        request_id = protocol.check_remote_profit(ADMIN, VAULT, ASSET)

        respond(protocol, VAULT, MessageType.CHECK_PROFIT, request_id, pnl=-300)

        covered = protocol.events.last("LossCovered").data
        assert (covered['covered'], covered['uncovered']) == (300, 0)
        assert protocol.allocator.get_allocation(ASSET).insurance == 700
        assert protocol.ledger.total_pool_value == 9_700

    def test_profit_check_loss_beyond_insurance_bucket(self):
        protocol = allocated_protocol()
        request_id = protocol.check_remote_profit(ADMIN, VAULT, ASSET)

        respond(protocol, VAULT, MessageType.CHECK_PROFIT, request_id, pnl=-1_500)

        covered = protocol.events.last("LossCovered").data
        assert (covered['covered'], covered['uncovered']) == (1_000, 500)
        assert protocol.allocator.total_unmitigated_loss == 500
        assert protocol.allocator.get_allocation(ASSET).insurance == 0
        # Token insurance (1,000) cannot cover 1,500, so the pool absorbs it
        assert protocol.ledger.total_pool_value == 8_500

    def test_profit_check_gain(self):
        protocol = allocated_protocol()
        request_id = protocol.check_remote_profit(ADMIN, ORDERS, ASSET)

        respond(protocol, ORDERS, MessageType.CHECK_PROFIT, request_id, pnl=500)

        assert protocol.allocator.get_allocation(ASSET).insurance == 1_005
        assert protocol.allocator.total_trader_share == 495
        assert protocol.ledger.total_trading_profits == 500

# ============================================
# REPLAY PROTECTION
# ============================================

class TestReplayProtection:

    def test_duplicate_delivery_rejected_without_changes(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)
        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=400)

        state_before = protocol.get_state()
        events_before = len(protocol.events.entries)

        with pytest.raises(RequestAlreadyProcessed):
            respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=400)

        assert protocol.get_state() == state_before
        assert len(protocol.events.entries) == events_before

    def test_wrong_origin_rejected(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        with pytest.raises(InvalidSourceChain):
            respond(protocol, ORDERS, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=400)

        assert protocol.allocator.get_request(request_id).status == RequestStatus.DISPATCHED

        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=400)
        assert protocol.allocator.get_request(request_id).status == RequestStatus.RESOLVED

    def test_wrong_message_type_rejected(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        with pytest.raises(InvalidMessageType):
            respond(protocol, VAULT, MessageType.LIMIT_ORDER, request_id)

    def test_unknown_request(self):
        protocol = allocated_protocol()

        with pytest.raises(RequestNotFound):
            respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, "f" * 64)

    def test_only_relay_may_respond(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)
        payload = response_payload(MessageType.DEPOSIT_TO_VAULT, request_id, True, 0)

        with pytest.raises(NotPermitted):
            protocol.handle_response("mallory", VAULT, payload)

        assert protocol.handle_response(RELAYER, VAULT, payload).processed == True

    def test_ledger_refusal_rolls_back_response(self):
        """A response is all-or-nothing: if the ledger refuses, the request stays pending."""
        protocol = allocated_protocol()
        allocator = protocol.allocator
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)
        protocol.gate.revoke(allocator.identity, "ledger.record_trading_profit")

        with pytest.raises(NotPermitted):
            respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=500)

        assert request_id not in allocator.processed_requests
        assert allocator.get_request(request_id).status == RequestStatus.DISPATCHED
        assert allocator.vault_profits.get(ASSET, 0) == 0

        protocol.gate.grant(allocator.identity, "ledger.record_trading_profit")
        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=500)
        assert allocator.vault_profits[ASSET] == 500

    def test_snapshot_copies_only_pending_requests(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator
        settled = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)
        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, settled)
        pending = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)

        snapshot = allocator.snapshot()

        assert snapshot['requests'][settled] is allocator.requests[settled]
        assert snapshot['requests'][pending] is not allocator.requests[pending]
        assert snapshot['requests'][pending] == allocator.requests[pending]

    def test_rollback_keeps_settled_history(self):
        protocol = allocated_protocol()
        allocator = protocol.allocator
        settled = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)
        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, settled, pnl=200)
        pending = protocol.deploy_to_nest_vault(ADMIN, ASSET, 1_000)
        protocol.gate.revoke(allocator.identity, "ledger.record_trading_profit")

        with pytest.raises(NotPermitted):
            respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, pending, pnl=300)

        assert list(allocator.requests) == [settled, pending]
        assert allocator.get_request(settled).pnl == 200
        assert allocator.get_request(pending).status == RequestStatus.DISPATCHED

# ============================================
# EXPIRY
# ============================================

class TestExpiry:

    def test_expired_vault_request_restores_allocation(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        request = protocol.expire_request(ADMIN, request_id)

        assert request.status == RequestStatus.EXPIRED
        assert protocol.allocator.get_allocation(ASSET).vault == 4_500
        assert protocol.allocator.get_pending_requests() == []

        with pytest.raises(RequestAlreadyProcessed):
            respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=100)
        with pytest.raises(RequestAlreadyProcessed):
            protocol.expire_request(ADMIN, request_id)

    def test_expired_limit_order_leaves_allocations(self):
        protocol = allocated_protocol()
        request_id = protocol.execute_limit_order(ADMIN, ASSET, 1_000)

        protocol.expire_request(ADMIN, request_id)

        assert protocol.allocator.get_allocation(ASSET).to_dict() == {
            'insurance': 1_000, 'vault': 4_500, 'orders': 4_500
        }

    def test_expiry_validation(self):
        protocol = allocated_protocol()
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        with pytest.raises(RequestNotFound):
            protocol.expire_request(ADMIN, "0" * 64)
        with pytest.raises(NotPermitted):
            protocol.expire_request("mallory", request_id)

# ============================================
# CONFIGURATION
# ============================================

class TestAllocatorConfiguration:

    def test_profit_threshold(self):
        protocol = allocated_protocol()
        protocol.set_profit_threshold(ADMIN, 5_000)
        request_id = protocol.deploy_to_nest_vault(ADMIN, ASSET, 2_000)

        respond(protocol, VAULT, MessageType.DEPOSIT_TO_VAULT, request_id, pnl=1_200)

        assert protocol.allocator.vault_profits[ASSET] == 1_200

        with pytest.raises(ZeroAmount):
            protocol.set_profit_threshold(ADMIN, 0)
        with pytest.raises(NotPermitted):
            protocol.set_profit_threshold("mallory", 10)

    def test_unsupported_asset_is_skipped(self):
        protocol = build_protocol()
        protocol.set_allocator_asset_supported(ADMIN, ASSET, False)
        protocol.assets.mint(ASSET, protocol.allocator.identity, 1_000)

        assert protocol.receive_funds_from_trading_pool(ADMIN) == {}
        with pytest.raises(AssetNotAllowed):
            protocol.deploy_to_nest_vault(ADMIN, ASSET, 10)
        assert protocol.allocator.supported_assets == ["USDT"]

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
