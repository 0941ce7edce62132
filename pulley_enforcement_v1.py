"""
Pulley Protocol - Enforcement Layer
Version: 1.0.0

Shared foundation for every Pulley component:
- logging setup and the shared logger
- error taxonomy (validation, authorization, insufficiency, replay)
- permission gate consulted by every state-mutating entry point
- append-only event log
- single-entry (non-reentrant) guard
- component snapshots for all-or-nothing execution
- invariant framework with signed decisions and automatic rollback
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from enum import Enum
from abc import ABC, abstractmethod
import copy
import functools
import hmac
import logging

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_SECRET = b"PULLEY_DECISION_SIGNING_KEY_ROTATE_QUARTERLY"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    FINANCIAL = "financial"
    SECURITY = "security"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    FREEZE = "freeze"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("Pulley.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class PulleyError(Exception):
    """Base class for every error raised by the core."""
    pass

# Validation errors: checked first, fatal, never retried.

class ValidationError(PulleyError):
    pass

class ZeroAddress(ValidationError):
    pass

class ZeroAmount(ValidationError):
    pass

class AssetNotAllowed(ValidationError):
    pass

# Authorization errors

class NotPermitted(PulleyError):
    """Raised when the permission gate refuses a caller."""
    pass

class AlreadyConfigured(PulleyError):
    """Raised when a set-once identity is assigned a second time."""
    pass

# Insufficiency errors: fatal to the call, caller re-checks and retries.

class InsufficientReserveFund(PulleyError):
    pass

class InsufficientReserves(PulleyError):
    pass

class InsufficientTokens(PulleyError):
    pass

class InsufficientBalance(PulleyError):
    pass

class InsufficientFunds(PulleyError):
    pass

# Replay / ordering errors: fatal and non-recoverable.

class RequestAlreadyProcessed(PulleyError):
    pass

class InvalidSourceChain(PulleyError):
    pass

class InvalidMessageType(PulleyError):
    pass

class RequestNotFound(PulleyError):
    pass

# Transfer and execution errors

class TransferFailed(PulleyError):
    pass

class ReentrantCall(PulleyError):
    pass

class InvariantViolation(Exception):
    """Raised when an invariant is violated."""
    pass

class SystemCompromised(Exception):
    """Raised when rollback fails - system integrity lost."""
    pass

# ============================================
# INPUT VALIDATION
# ============================================

def require_address(address: Optional[str], label: str = "address"):
    """Reject empty and zero addresses."""
    if not address or address == ZERO_ADDRESS:
        raise ZeroAddress(f"{label} must not be the zero address")

def require_amount(amount: int, label: str = "amount"):
    """Reject zero (and negative) amounts."""
    if amount <= 0:
        raise ZeroAmount(f"{label} must be greater than zero (got {amount})")

# ============================================
# PERMISSION GATE
# ============================================

class PermissionGate(ABC):
    """External collaborator: answers whether a caller may run an operation."""

    @abstractmethod
    def has_permission(self, caller: str, operation_id: str) -> bool:
        pass

    def require(self, caller: str, operation_id: str):
        if not self.has_permission(caller, operation_id):
            logger.warning(f"[AUTH] Denied {operation_id} for {caller}")
            raise NotPermitted(f"{caller} is not permitted to call {operation_id}")

class AllowListPermissionGate(PermissionGate):
    """
    Allow-list keyed by (caller, operation).

    The wildcard caller "*" opens an operation to everyone. Grant and revoke
    exist for wiring only; governance of the list lives outside the core.
    """

    WILDCARD = "*"

    def __init__(self, grants: Optional[Iterable[Tuple[str, str]]] = None):
        self._grants: Set[Tuple[str, str]] = set(grants or [])

    def grant(self, caller: str, operation_id: str):
        self._grants.add((caller, operation_id))

    def revoke(self, caller: str, operation_id: str):
        self._grants.discard((caller, operation_id))

    def has_permission(self, caller: str, operation_id: str) -> bool:
        return (
            (caller, operation_id) in self._grants
            or (self.WILDCARD, operation_id) in self._grants
        )

# ============================================
# EVENT LOG
# ============================================

@dataclass
class ProtocolEvent:
    """Immutable record of something a component emitted."""
    name: str
    source: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)

class EventLog:
    """Append-only log of protocol events."""

    def __init__(self):
        self.entries: List[ProtocolEvent] = []

    def emit(self, source: str, name: str, **data) -> ProtocolEvent:
        event = ProtocolEvent(name=name, source=source, data=data)
        self.entries.append(event)
        logger.debug(f"EVENT {source}.{name}: {data}")
        return event

    def named(self, name: str) -> List[ProtocolEvent]:
        return [e for e in self.entries if e.name == name]

    def last(self, name: Optional[str] = None) -> Optional[ProtocolEvent]:
        for event in reversed(self.entries):
            if name is None or event.name == name:
                return event
        return None

# ============================================
# SINGLE-ENTRY GUARD
# ============================================

def nonreentrant(method: Callable) -> Callable:
    """Reject a call that re-enters the same component while one is in flight."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if getattr(self, "_entered", False):
            logger.critical(f"REENTRANCY blocked: {type(self).__name__}.{method.__name__}")
            raise ReentrantCall(f"{type(self).__name__}.{method.__name__} re-entered")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper

# ============================================
# SNAPSHOTS
# ============================================

class Snapshottable:
    """
    Components list their mutable fields in SNAPSHOT_FIELDS.

    History lists that only ever grow go in APPEND_ONLY_FIELDS instead: the
    snapshot keeps their length and restore truncates them back to it.
    """

    SNAPSHOT_FIELDS: Tuple[str, ...] = ()
    APPEND_ONLY_FIELDS: Tuple[str, ...] = ()

    def snapshot(self) -> Dict[str, Any]:
        """Capture mutable state (for rollback)."""
        state = {name: copy.deepcopy(getattr(self, name)) for name in self.SNAPSHOT_FIELDS}
        state['_lengths'] = {name: len(getattr(self, name)) for name in self.APPEND_ONLY_FIELDS}
        return state

    def restore(self, snapshot: Dict[str, Any]):
        """Restore state from snapshot."""
        for name, value in snapshot.items():
            if name == '_lengths':
                for field_name, length in value.items():
                    del getattr(self, field_name)[length:]
            else:
                setattr(self, name, copy.deepcopy(value))

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    operation: str
    signature: str

    def verify_signature(self) -> bool:
        """Verify cryptographic signature."""
        expected = sign_decision(self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

def sign_decision(invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(SYSTEM_SECRET, data.encode(), 'sha256').hexdigest()

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Immutable, append-only ledger of all enforcement decisions."""

    def __init__(self):
        self.entries: List[EnforcementDecision] = []

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature():
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [e for e in self.entries if not e.result]

    def health_score(self) -> float:
        if not self.entries:
            return 1.0
        passed = sum(1 for e in self.entries if e.result)
        return passed / len(self.entries)

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature() for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants."""

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str,
        decay_window: Optional[timedelta] = None
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner
        self.decay_window = decay_window

    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        return True

    @abstractmethod
    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        pass

    def rollback_action(self, state_before: Dict[str, Any]):
        """Define rollback procedure."""
        logger.debug(f"ROLLBACK {self.id}: no component-specific action")

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """
    Runs an action between dependency-ordered pre and post checks.

    The caller passes a ``host`` keyword exposing ``snapshot()`` and
    ``restore()``; any exception from the action or a failed post-check
    restores the host to its state before the action.
    """

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger,
                 on_check: Optional[Callable[[str, str, bool], None]] = None,
                 on_rollback: Optional[Callable[[str], None]] = None):
        self.invariants = invariants
        self.ledger = ledger
        self.on_check = on_check
        self.on_rollback = on_rollback
        self.sorted_invariants = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def enforce_action(self, operation: str, action: Callable[[], Any], host, **context) -> Any:
        """Execute action with full invariant enforcement."""

        state_before = {
            'timestamp': datetime.now(),
            'operation': operation,
            'host': host,
            'snapshot': host.snapshot(),
            **context
        }

        for inv in self.sorted_invariants:
            decision = self._check(inv, "PRE", operation, lambda: inv.pre_check(host=host, **context))
            if not decision.result:
                logger.error(f"PRE-CHECK FAILED: {inv.id} ({operation})")
                raise InvariantViolation(f"Pre-check failed: {inv.id}")

        try:
            result = action()
        except Exception as e:
            logger.error(f"ACTION FAILED: {operation}: {e!r}")
            self._rollback(state_before)
            raise

        for inv in self.sorted_invariants:
            decision = self._check(inv, "POST", operation,
                                   lambda: inv.post_check(result, host=host, state_before=state_before, **context))
            if not decision.result:
                logger.error(f"POST-CHECK FAILED: {inv.id} ({operation})")
                self._rollback(state_before)
                raise InvariantViolation(f"Post-check failed: {inv.id}")

        logger.debug(f"All invariant checks PASSED for {operation}")
        return result

    def _check(self, inv: Invariant, check_type: str, operation: str,
               check: Callable[[], bool]) -> EnforcementDecision:
        try:
            passed = bool(check())
        except Exception as e:
            logger.error(f"{check_type}-check exception: {inv.id}", exc_info=e)
            passed = False

        if passed:
            action = EnforcementResult.PROCEED
        elif check_type == "PRE":
            action = EnforcementResult.FREEZE
        else:
            action = EnforcementResult.ROLLBACK

        timestamp = datetime.now()
        decision = EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            result=passed,
            action=action,
            timestamp=timestamp,
            operation=operation,
            signature=sign_decision(inv.id, passed, timestamp)
        )
        self.ledger.record(decision)
        if self.on_check:
            self.on_check(inv.id, check_type, passed)
        return decision

    def _rollback(self, state_before: Dict[str, Any]):
        """Automatic rollback to previous state."""
        logger.warning(f"ROLLBACK INITIATED: {state_before['operation']}")

        try:
            state_before['host'].restore(state_before['snapshot'])
        except Exception as e:
            logger.critical(f"ROLLBACK FAILED for {state_before['operation']}: {e}")
            raise SystemCompromised(f"Rollback failed for {state_before['operation']}")

        for inv in reversed(self.sorted_invariants):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}")

        if self.on_rollback:
            self.on_rollback(state_before["operation"])
        logger.info("ROLLBACK COMPLETE")
