"""
Pulley Protocol - Prometheus Metrics
Observability for the liquidity engine, trading ledger and cross-chain allocator
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# LIQUIDITY METRICS
# ============================================

liquidity_provided_counter = Counter(
    'pulley_liquidity_provided_total',
    'Total asset units deposited by liquidity providers',
    ['asset'],
    registry=metrics_registry
)

liquidity_withdrawn_counter = Counter(
    'pulley_liquidity_withdrawn_total',
    'Total asset units returned to liquidity providers',
    ['asset'],
    registry=metrics_registry
)

insurance_backing_counter = Counter(
    'pulley_insurance_backing_total',
    'Total asset units routed into the insurance reserve',
    ['asset'],
    registry=metrics_registry
)

deposit_amount_histogram = Histogram(
    'pulley_deposit_amount_units',
    'Liquidity deposit sizes',
    buckets=[100, 1000, 10000, 100000, 1000000, 10000000],
    registry=metrics_registry
)

# ============================================
# TRADING LEDGER METRICS
# ============================================

trading_loss_counter = Counter(
    'pulley_trading_losses_total',
    'Trading losses recorded, by coverage outcome',
    ['outcome'],  # covered, absorbed
    registry=metrics_registry
)

trading_profit_counter = Counter(
    'pulley_trading_profits_total',
    'Trading profit units recorded',
    registry=metrics_registry
)

pool_value_gauge = Gauge(
    'pulley_total_pool_value',
    'Aggregate trading pool value',
    registry=metrics_registry
)

profit_share_gauge = Gauge(
    'pulley_profit_share_percent',
    'Share of trading profit routed to insurance providers (20-80)',
    registry=metrics_registry
)

sweep_counter = Counter(
    'pulley_sweeps_total',
    'Asset balances swept to the collection address',
    ['asset'],
    registry=metrics_registry
)

# ============================================
# CROSS-CHAIN METRICS
# ============================================

crosschain_request_counter = Counter(
    'pulley_crosschain_requests_total',
    'Cross-chain requests dispatched',
    ['message_type'],
    registry=metrics_registry
)

crosschain_response_counter = Counter(
    'pulley_crosschain_responses_total',
    'Cross-chain responses reconciled',
    ['message_type', 'result'],  # success, failure
    registry=metrics_registry
)

replay_rejected_counter = Counter(
    'pulley_crosschain_replays_rejected_total',
    'Responses rejected because their request was already processed',
    registry=metrics_registry
)

pending_requests_gauge = Gauge(
    'pulley_crosschain_pending_requests',
    'Dispatched requests still waiting for a response',
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'pulley_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

rollback_counter = Counter(
    'pulley_rollbacks_total',
    'Total number of rollbacks executed',
    ['operation'],
    registry=metrics_registry
)

# ============================================
# SYSTEM HEALTH METRICS
# ============================================

system_health_gauge = Gauge(
    'pulley_system_health_score',
    'Share of invariant checks that passed (0-1)',
    registry=metrics_registry
)

reserve_fund_gauge = Gauge(
    'pulley_reserve_fund',
    'Value backing outstanding stable token supply',
    registry=metrics_registry
)

insurance_funds_gauge = Gauge(
    'pulley_insurance_funds',
    'Insurance-sourced portion of the reserve fund',
    registry=metrics_registry
)

token_supply_gauge = Gauge(
    'pulley_token_supply',
    'Outstanding stable token supply',
    registry=metrics_registry
)

api_request_counter = Counter(
    'pulley_api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_liquidity_provided(asset: str, amount: int):
    liquidity_provided_counter.labels(asset=asset).inc(amount)
    deposit_amount_histogram.observe(amount)

def record_liquidity_withdrawn(asset: str, amount: int):
    liquidity_withdrawn_counter.labels(asset=asset).inc(amount)

def record_insurance_backing(asset: str, amount: int):
    insurance_backing_counter.labels(asset=asset).inc(amount)

def record_trading_loss(amount: int, covered: bool, pool_value: int, profit_share: int):
    """Record a loss and the ledger aggregates it moved."""
    trading_loss_counter.labels(outcome="covered" if covered else "absorbed").inc(amount)
    pool_value_gauge.set(pool_value)
    profit_share_gauge.set(profit_share)

def record_trading_profit(amount: int, pool_value: int):
    trading_profit_counter.inc(amount)
    pool_value_gauge.set(pool_value)

def record_sweep(asset: str, amount: int, pool_value: int):
    sweep_counter.labels(asset=asset).inc(amount)
    pool_value_gauge.set(pool_value)

def record_crosschain_request(message_type: str, pending: int):
    crosschain_request_counter.labels(message_type=message_type).inc()
    pending_requests_gauge.set(pending)

def record_crosschain_response(message_type: str, success: bool, pending: int):
    crosschain_response_counter.labels(
        message_type=message_type,
        result="success" if success else "failure"
    ).inc()
    pending_requests_gauge.set(pending)

def record_replay_rejected():
    replay_rejected_counter.inc()

def record_invariant_check(invariant_id: str, check_type: str, result: bool):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

def record_rollback(operation: str):
    rollback_counter.labels(operation=operation).inc()

def update_token_health(reserve_fund: int, insurance_funds: int, total_supply: int):
    reserve_fund_gauge.set(reserve_fund)
    insurance_funds_gauge.set(insurance_funds)
    token_supply_gauge.set(total_supply)

def record_api_request(endpoint: str, method: str, status_code: int):
    api_request_counter.labels(
        endpoint=endpoint,
        method=method,
        status_code=status_code
    ).inc()
