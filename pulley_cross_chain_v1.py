"""
Pulley Protocol - Cross-Chain Allocator
Version: 1.0.0

Splits funds received from the trading pool into three fixed buckets
(10% insurance / 45% nest vault / 45% limit orders), dispatches asynchronous
requests to remote venues and reconciles their responses.

Request lifecycle:
    DISPATCHED --response--> RESOLVED
    DISPATCHED --expire----> EXPIRED
A request id that is already processed rejects every later response.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
import copy
import hashlib

from pulley_assets_v1 import AssetBank
from pulley_config_v1 import CrossChainConfig
from pulley_enforcement_v1 import (
    AssetNotAllowed,
    EventLog,
    InsufficientFunds,
    InvalidMessageType,
    InvalidSourceChain,
    PermissionGate,
    RequestAlreadyProcessed,
    RequestNotFound,
    Snapshottable,
    ValidationError,
    logger,
    nonreentrant,
    require_address,
    require_amount
)
from pulley_liquidity_engine_v1 import LiquidityEngine
from pulley_messaging_v1 import CrossChainPayload, InMemoryRelay, MessageType
from pulley_trading_ledger_v1 import TradingLedger
import pulley_metrics as metrics

# ============================================
# DATA MODELS
# ============================================

class RequestStatus(Enum):
    DISPATCHED = "dispatched"
    RESOLVED = "resolved"
    EXPIRED = "expired"

@dataclass
class CrossChainRequest:
    """A remote operation awaiting its response."""
    request_id: str
    destination_id: str
    message_type: MessageType
    asset: str
    amount: int
    timestamp: datetime
    processed: bool = False
    status: RequestStatus = RequestStatus.DISPATCHED
    resolved_at: Optional[datetime] = None
    success: Optional[bool] = None
    pnl: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'request_id': self.request_id,
            'destination_id': self.destination_id,
            'message_type': self.message_type.name,
            'asset': self.asset,
            'amount': self.amount,
            'timestamp': self.timestamp.isoformat(),
            'processed': self.processed,
            'status': self.status.value,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'success': self.success,
            'pnl': self.pnl
        }

@dataclass(frozen=True)
class FundAllocation:
    """Three-way split; the rounding remainder always lands in the vault."""
    insurance: int
    vault: int
    orders: int

    INSURANCE_PERCENT = 10
    VAULT_PERCENT = 45
    ORDER_PERCENT = 45

    @classmethod
    def split(cls, amount: int) -> "FundAllocation":
        insurance = amount * cls.INSURANCE_PERCENT // 100
        orders = amount * cls.ORDER_PERCENT // 100
        vault = amount - insurance - orders
        return cls(insurance=insurance, vault=vault, orders=orders)

    @property
    def total(self) -> int:
        return self.insurance + self.vault + self.orders

    def to_dict(self) -> Dict:
        return {'insurance': self.insurance, 'vault': self.vault, 'orders': self.orders}

# ============================================
# CROSS-CHAIN ALLOCATOR
# ============================================

class CrossChainAllocator(Snapshottable):
    """Fans pooled funds out to remote strategies and settles their results."""

    INSURANCE_PROFIT_PERCENT = 1

    SNAPSHOT_FIELDS = (
        "supported_assets", "supported_index", "profit_threshold",
        "insurance_allocation", "vault_allocation", "order_allocation",
        "allocated_custody", "total_invested", "vault_profits", "order_profits",
        "processed_requests", "nonce",
        "total_insurance_share", "total_trader_share", "total_unmitigated_loss"
    )

    def __init__(
        self,
        config: CrossChainConfig,
        engine: LiquidityEngine,
        ledger: TradingLedger,
        assets: AssetBank,
        channel: InMemoryRelay,
        gate: PermissionGate,
        events: Optional[EventLog] = None
    ):
        self.identity = config.identity
        self.engine = engine
        self.ledger = ledger
        self.assets = assets
        self.channel = channel
        self.gate = gate
        self.events = events or engine.events

        self.nest_vault_destination = config.nest_vault_destination
        self.limit_order_destination = config.limit_order_destination
        self.profit_threshold = config.profit_threshold

        self.supported_assets: List[str] = []
        self.supported_index: Dict[str, int] = {}
        for asset in config.supported_assets:
            self._add_supported(asset)

        # Allocation buckets per asset
        self.insurance_allocation: Dict[str, int] = {}
        self.vault_allocation: Dict[str, int] = {}
        self.order_allocation: Dict[str, int] = {}
        # Custody balance already split and still held by the allocator
        self.allocated_custody: Dict[str, int] = {}
        self.total_invested = 0

        # Profit accumulators (vault per asset, orders shared)
        self.vault_profits: Dict[str, int] = {}
        self.order_profits = 0

        self.requests: Dict[str, CrossChainRequest] = {}
        self.processed_requests: Set[str] = set()
        self.nonce = 0

        self.total_insurance_share = 0
        self.total_trader_share = 0
        self.total_unmitigated_loss = 0

        logger.info(f"[XCHAIN] Initialized {self.identity} with assets {self.supported_assets}")

    # Settled requests are immutable; only pending ones are copied.

    def snapshot(self) -> Dict[str, Any]:
        state = super().snapshot()
        state['requests'] = {
            request_id: copy.deepcopy(request) if request.status == RequestStatus.DISPATCHED else request
            for request_id, request in self.requests.items()
        }
        return state

    def restore(self, snapshot: Dict[str, Any]):
        requests = snapshot['requests']
        super().restore({name: value for name, value in snapshot.items() if name != 'requests'})
        self.requests = {
            request_id: copy.deepcopy(request) if request.status == RequestStatus.DISPATCHED else request
            for request_id, request in requests.items()
        }

    # ============================================
    # CONFIGURATION
    # ============================================

    def set_supported_asset(self, caller: str, asset: str, supported: bool):
        self.gate.require(caller, "xchain.set_supported_asset")
        require_address(asset, "asset")

        if supported:
            self._add_supported(asset)
        elif asset in self.supported_index:
            position = self.supported_index.pop(asset)
            last = self.supported_assets.pop()
            if last != asset:
                self.supported_assets[position] = last
                self.supported_index[last] = position

        self.events.emit("xchain", "SupportedAssetUpdated", asset=asset, supported=supported)
        logger.info(f"[XCHAIN] Asset {asset} supported={supported}")

    def set_profit_threshold(self, caller: str, threshold: int):
        self.gate.require(caller, "xchain.set_profit_threshold")
        require_amount(threshold, "threshold")
        self.profit_threshold = threshold
        self.events.emit("xchain", "ProfitThresholdUpdated", threshold=threshold)
        logger.info(f"[XCHAIN] Profit threshold set to {threshold:,}")

    # ============================================
    # FUND ALLOCATION
    # ============================================

    @nonreentrant
    def receive_funds_from_trading_pool(self, caller: str) -> Dict[str, FundAllocation]:
        """
        Split every supported asset's unallocated custody balance and forward
        the insurance bucket to the liquidity engine.
        """
        self.gate.require(caller, "xchain.receive_funds")

        allocations: Dict[str, FundAllocation] = {}

        for asset in list(self.supported_assets):
            balance = self.assets.balance_of(asset, self.identity)
            fresh = balance - self.allocated_custody.get(asset, 0)
            if fresh <= 0:
                continue

            allocation = FundAllocation.split(fresh)
            allocations[asset] = allocation

            self.insurance_allocation[asset] = self.insurance_allocation.get(asset, 0) + allocation.insurance
            self.vault_allocation[asset] = self.vault_allocation.get(asset, 0) + allocation.vault
            self.order_allocation[asset] = self.order_allocation.get(asset, 0) + allocation.orders
            self.allocated_custody[asset] = (
                self.allocated_custody.get(asset, 0) + allocation.vault + allocation.orders
            )
            self.total_invested += fresh

            self.events.emit("xchain", "FundsAllocated", asset=asset, amount=fresh, **allocation.to_dict())
            logger.info(
                f"[XCHAIN] Allocated {fresh:,} {asset}: insurance={allocation.insurance:,}, "
                f"vault={allocation.vault:,}, orders={allocation.orders:,}"
            )

            if allocation.insurance > 0:
                self.assets.approve(asset, self.identity, self.engine.identity, allocation.insurance)
                self.engine.insurance_backing_minter(self.identity, asset, allocation.insurance)

        return allocations

    # ============================================
    # DISPATCH
    # ============================================

    @nonreentrant
    def deploy_to_nest_vault(self, caller: str, asset: str, amount: int) -> str:
        """Pre-commit vault allocation and ask the vault chain to deposit it."""
        self.gate.require(caller, "xchain.deploy_to_nest_vault")
        self._require_supported(asset)
        require_amount(amount)

        available = self.vault_allocation.get(asset, 0)
        if amount > available:
            raise InsufficientFunds(f"Vault allocation for {asset} is {available:,}, asked {amount:,}")

        self.vault_allocation[asset] = available - amount

        return self._dispatch(self.nest_vault_destination, MessageType.DEPOSIT_TO_VAULT, asset, amount)

    @nonreentrant
    def execute_limit_order(self, caller: str, asset: str, amount: int,
                            limit_price: int = 0, is_buy: bool = True) -> str:
        """Place a remote limit order. Order funds are not pre-committed."""
        self.gate.require(caller, "xchain.execute_limit_order")
        self._require_supported(asset)
        require_amount(amount)

        return self._dispatch(self.limit_order_destination, MessageType.LIMIT_ORDER, asset, amount,
                              limit_price=limit_price, is_buy=is_buy)

    @nonreentrant
    def check_remote_profit(self, caller: str, destination_id: str, asset: str) -> str:
        """Ask a remote venue to report realised P&L for an asset."""
        self.gate.require(caller, "xchain.check_remote_profit")
        self._require_supported(asset)
        if destination_id not in (self.nest_vault_destination, self.limit_order_destination):
            raise ValidationError(f"Unknown destination {destination_id}")

        return self._dispatch(destination_id, MessageType.CHECK_PROFIT, asset, 0)

    def _dispatch(self, destination: str, message_type: MessageType, asset: str,
                  amount: int, **extra) -> str:
        self.nonce += 1
        timestamp = datetime.now()
        request_id = self._request_id(destination, message_type, asset, amount, self.nonce, timestamp)

        self.requests[request_id] = CrossChainRequest(
            request_id=request_id,
            destination_id=destination,
            message_type=message_type,
            asset=asset,
            amount=amount,
            timestamp=timestamp
        )

        payload = CrossChainPayload(
            message_type=message_type,
            data={'request_id': request_id, 'asset': asset, 'amount': amount, **extra}
        )
        self.channel.send(destination, payload)

        self.events.emit("xchain", "RequestDispatched", request_id=request_id,
                         destination=destination, message_type=message_type.name,
                         asset=asset, amount=amount)
        metrics.record_crosschain_request(message_type.name, len(self.get_pending_requests()))
        logger.info(f"[XCHAIN] Dispatched {message_type.name} {request_id[:12]} → {destination} ({amount:,} {asset})")
        return request_id

    def _request_id(self, destination: str, message_type: MessageType, asset: str,
                    amount: int, nonce: int, timestamp: datetime) -> str:
        raw = f"{self.identity}:{destination}:{message_type.value}:{asset}:{amount}:{nonce}:{timestamp.isoformat()}"
        return hashlib.sha256(raw.encode()).hexdigest()

    # ============================================
    # RESPONSE RECONCILIATION
    # ============================================

    @nonreentrant
    def handle_response(self, caller: str, origin: str, payload: Any) -> CrossChainRequest:
        """
        Reconcile a remote response. Keyed by request id; a second response
        for the same id is rejected before anything changes.
        """
        self.gate.require(caller, "xchain.handle_response")
        payload = CrossChainPayload.decode(payload)

        request_id = payload.data.get('request_id')
        if not isinstance(request_id, str):
            raise InvalidMessageType(f"Response request id must be a string, got {request_id!r}")
        request = self.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"No request {request_id}")

        if request_id in self.processed_requests:
            metrics.record_replay_rejected()
            logger.warning(f"[XCHAIN] Replay rejected for {request_id[:12]} (status: {request.status.value})")
            raise RequestAlreadyProcessed(f"Request {request_id} already processed")

        if origin != request.destination_id:
            logger.critical(f"[XCHAIN] Response for {request_id[:12]} from {origin}, expected {request.destination_id}")
            raise InvalidSourceChain(f"Response origin {origin} does not match {request.destination_id}")

        if payload.message_type != request.message_type:
            raise InvalidMessageType(
                f"Response type {payload.message_type.name} does not match request type {request.message_type.name}"
            )

        success = bool(payload.data.get('success', False))
        pnl = int(payload.data.get('pnl', 0))

        self.processed_requests.add(request_id)
        request.processed = True
        request.status = RequestStatus.RESOLVED
        request.resolved_at = datetime.now()
        request.success = success
        request.pnl = pnl

        if request.message_type == MessageType.DEPOSIT_TO_VAULT:
            self._on_vault_response(request, success, pnl)
        elif request.message_type == MessageType.LIMIT_ORDER:
            self._on_limit_order_response(request, success, pnl)
        else:
            self._distribute_profit_or_loss(request.asset, pnl)

        self._report_to_ledger(pnl)

        self.events.emit("xchain", "ResponseProcessed", request_id=request_id,
                         message_type=request.message_type.name, success=success, pnl=pnl)
        metrics.record_crosschain_response(request.message_type.name, success, len(self.get_pending_requests()))
        logger.info(f"[XCHAIN] Resolved {request.message_type.name} {request_id[:12]}: success={success}, pnl={pnl:,}")
        return request

    def _on_vault_response(self, request: CrossChainRequest, success: bool, pnl: int):
        if success:
            self.vault_profits[request.asset] = self.vault_profits.get(request.asset, 0) + pnl
            self._check_profit_threshold("vault", request.asset)
        else:
            # Compensate: the remote deposit never happened
            self.vault_allocation[request.asset] = self.vault_allocation.get(request.asset, 0) + request.amount
            self.events.emit("xchain", "VaultDepositReverted", request_id=request.request_id,
                             asset=request.asset, amount=request.amount)
            logger.warning(f"[XCHAIN] Vault deposit failed, restored {request.amount:,} {request.asset} to vault allocation")

    def _on_limit_order_response(self, request: CrossChainRequest, success: bool, pnl: int):
        if success:
            self.order_profits += pnl
            self._check_profit_threshold("orders", request.asset)
        else:
            logger.warning(f"[XCHAIN] Limit order {request.request_id[:12]} failed")

    def _report_to_ledger(self, pnl: int):
        if pnl > 0:
            self.ledger.record_trading_profit(self.identity, pnl)
        elif pnl < 0:
            self.ledger.record_trading_loss(self.identity, -pnl)

    # ============================================
    # THRESHOLD & DISTRIBUTION
    # ============================================

    def _check_profit_threshold(self, bucket: str, asset: str) -> bool:
        accumulated = self.vault_profits.get(asset, 0) if bucket == "vault" else self.order_profits
        if accumulated < self.profit_threshold:
            return False

        self.events.emit("xchain", "ProfitThresholdReached", bucket=bucket, asset=asset,
                         amount=accumulated, threshold=self.profit_threshold)
        logger.info(f"[XCHAIN] {bucket} profit {accumulated:,} reached threshold {self.profit_threshold:,}")

        self._distribute_profit_or_loss(asset, accumulated)

        if bucket == "vault":
            self.vault_profits[asset] = 0
        else:
            self.order_profits = 0
        return True

    def _distribute_profit_or_loss(self, asset: str, pnl: int):
        if pnl > 0:
            insurance_share = pnl * self.INSURANCE_PROFIT_PERCENT // 100
            trader_share = pnl - insurance_share

            # Tracked locally; not yet routed through the token/engine path
            self.insurance_allocation[asset] = self.insurance_allocation.get(asset, 0) + insurance_share
            self.total_insurance_share += insurance_share
            self.total_trader_share += trader_share

            self.events.emit("xchain", "ProfitDistributed", asset=asset,
                             insurance_share=insurance_share, trader_share=trader_share)
            logger.info(f"[XCHAIN] Profit {pnl:,} {asset}: insurance={insurance_share:,}, traders={trader_share:,}")
        elif pnl < 0:
            loss = -pnl
            available = self.insurance_allocation.get(asset, 0)
            covered = min(loss, available)
            uncovered = loss - covered

            self.insurance_allocation[asset] = available - covered
            self.total_unmitigated_loss += uncovered

            self.events.emit("xchain", "LossCovered", asset=asset, loss=loss,
                             covered=covered, uncovered=uncovered)
            if uncovered:
                logger.warning(f"[XCHAIN] Loss {loss:,} {asset}: covered={covered:,}, unmitigated={uncovered:,}")
            else:
                logger.info(f"[XCHAIN] Loss {loss:,} {asset} fully covered by insurance allocation")

    # ============================================
    # EXPIRY
    # ============================================

    @nonreentrant
    def expire_request(self, caller: str, request_id: str) -> CrossChainRequest:
        """
        Give up on a dispatched request. A later response for it is treated as
        a replay; a vault deposit's pre-committed allocation is restored.
        """
        self.gate.require(caller, "xchain.expire_request")

        request = self.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"No request {request_id}")
        if request_id in self.processed_requests:
            raise RequestAlreadyProcessed(f"Request {request_id} already processed")

        self.processed_requests.add(request_id)
        request.processed = True
        request.status = RequestStatus.EXPIRED
        request.resolved_at = datetime.now()

        if request.message_type == MessageType.DEPOSIT_TO_VAULT:
            self.vault_allocation[request.asset] = self.vault_allocation.get(request.asset, 0) + request.amount

        self.events.emit("xchain", "RequestExpired", request_id=request_id,
                         message_type=request.message_type.name, amount=request.amount)
        metrics.pending_requests_gauge.set(len(self.get_pending_requests()))
        logger.warning(f"[XCHAIN] Expired {request.message_type.name} {request_id[:12]}")
        return request

    # ============================================
    # VIEWS
    # ============================================

    def get_request(self, request_id: str) -> Optional[CrossChainRequest]:
        return self.requests.get(request_id)

    def get_pending_requests(self) -> List[CrossChainRequest]:
        return [r for r in self.requests.values() if r.status == RequestStatus.DISPATCHED]

    def get_allocation(self, asset: str) -> FundAllocation:
        return FundAllocation(
            insurance=self.insurance_allocation.get(asset, 0),
            vault=self.vault_allocation.get(asset, 0),
            orders=self.order_allocation.get(asset, 0)
        )

    def is_supported(self, asset: str) -> bool:
        return asset in self.supported_index

    def to_dict(self) -> Dict:
        return {
            'total_invested': self.total_invested,
            'profit_threshold': self.profit_threshold,
            'allocations': {asset: self.get_allocation(asset).to_dict() for asset in self.supported_assets},
            'vault_profits': dict(self.vault_profits),
            'order_profits': self.order_profits,
            'pending_requests': len(self.get_pending_requests()),
            'processed_requests': len(self.processed_requests)
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
            raise AssetNotAllowed(f"Asset {asset} is not supported by the allocator")
