"""
Business Management Service (BMS) - Enforcement Layer
Version: 1.0.0

Error taxonomy, invariant base class, signed decision ledger and the
enforcer that wraps every stock reservation and invoice assembly.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional
from enum import Enum
import hmac
import logging
import threading
from abc import ABC, abstractmethod

from bms_config import get_settings

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SETTINGS = get_settings()
SYSTEM_SECRET = SETTINGS.system_secret.encode()

class InvariantType(Enum):
    STATE = "state"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    REJECT = "reject"
    FREEZE = "freeze"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level.upper(), logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("BMS.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class BMSError(Exception):
    """Base class for every failure surfaced to callers."""

    kind = "BMSError"

    def __init__(
        self,
        message: str,
        product_id: Optional[str] = None,
        line_index: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.product_id = product_id
        self.line_index = line_index
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'error': self.kind, 'message': self.message}
        if self.product_id is not None:
            body['product_id'] = self.product_id
        if self.line_index is not None:
            body['line_index'] = self.line_index
        if self.details:
            body['details'] = self.details
        return body

class ValidationError(BMSError):
    """Malformed request: empty item list, non-positive quantity, missing ids."""
    kind = "ValidationError"

class NotFound(BMSError):
    """Referenced entity does not exist."""
    kind = "NotFound"

class InsufficientStock(BMSError):
    """Requested quantity exceeds quantity on hand."""
    kind = "InsufficientStock"

    def __init__(self, product_id: str, requested: int, available: int, line_index: Optional[int] = None):
        super().__init__(
            f"Insufficient stock for product {product_id} at the time of the attempt: "
            f"requested {requested}, on hand when re-read {available}",
            product_id=product_id,
            line_index=line_index,
            details={'requested': requested, 'available': available}
        )
        self.requested = requested
        self.available = available

class PersistenceError(BMSError):
    """Store unavailable or write conflict."""
    kind = "PersistenceError"

class DuplicateInvoiceNumber(PersistenceError):
    """Unique index on invoice_number rejected an insert."""
    kind = "DuplicateInvoiceNumber"

class Unauthenticated(BMSError):
    """Missing or invalid credentials."""
    kind = "Unauthenticated"

class Unauthorized(BMSError):
    """Authenticated principal lacks the required role."""
    kind = "Unauthorized"

class InvariantViolation(BMSError):
    """Raised when an invariant is violated."""
    kind = "InvariantViolation"

class SystemCompromised(BMSError):
    """Raised when a state invariant the store must guarantee was broken."""
    kind = "SystemCompromised"

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def _sign(invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(SYSTEM_SECRET, data.encode(), 'sha256').hexdigest()

@dataclass(frozen=True)
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    signature: str

    def verify_signature(self) -> bool:
        """Verify cryptographic signature."""
        return hmac.compare_digest(self.signature, _sign(self.invariant_id, self.result, self.timestamp))

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """
    Append-only ledger of recent enforcement decisions.

    Only the newest max_entries decisions are kept; the post-check tallies
    behind health_score cover every decision ever recorded.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.entries: Deque[EnforcementDecision] = deque(maxlen=max_entries or SETTINGS.decision_ledger_size)
        self._post_checks = 0
        self._post_checks_passed = 0
        self._lock = threading.Lock()

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature():
            raise SystemCompromised("Invalid signature on enforcement decision")

        with self._lock:
            self.entries.append(decision)
            if decision.check_type == "POST":
                self._post_checks += 1
                if decision.result:
                    self._post_checks_passed += 1
        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def health_score(self) -> float:
        """
        Share of post-checks that held; 1.0 before any post-check ran.
        Pre-check rejections (malformed requests) are not counted.
        """
        with self._lock:
            total, passed = self._post_checks, self._post_checks_passed
        return passed / total if total else 1.0

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        with self._lock:
            entries = list(self.entries)
        return all(entry.verify_signature() for entry in entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants."""

    # Raised by the enforcer when a check on this invariant fails
    violation_error = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str]
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""

    @abstractmethod
    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""

    def failure_message(self, **kwargs) -> str:
        return f"{self.id}: {self.statement}"

    def failure_context(self, **kwargs) -> Dict[str, Any]:
        """Identifiers attached to the raised error."""
        return {'product_id': kwargs.get('product_id')}

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """
    Runs pre-checks, the action, then post-checks.

    There is no automatic rollback: an action that fails part way keeps the
    effects it already applied, and the caller decides what to do about them.
    """

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger):
        self.invariants = self._topological_sort(invariants)
        self.ledger = ledger
        self.on_decision: Optional[Callable[[Invariant, EnforcementDecision], None]] = None

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

    def enforce_action(self, action: Callable, **kwargs) -> Any:
        """Execute action with full invariant enforcement."""

        # PRE-ACTION CHECKS (in dependency order)
        for inv in self.invariants:
            decision = self._decide(inv, "PRE", lambda: inv.pre_check(**kwargs))
            if not decision.result:
                logger.warning(f"PRE-CHECK FAILED: {inv.id}")
                raise inv.violation_error(inv.failure_message(**kwargs), **inv.failure_context(**kwargs))

        # Domain rejections raised by the action propagate untouched
        result = action(**kwargs)

        # POST-ACTION CHECKS (in dependency order)
        for inv in self.invariants:
            decision = self._decide(inv, "POST", lambda: inv.post_check(result, **kwargs))
            if not decision.result:
                logger.critical(f"POST-CHECK FAILED: {inv.id}")
                raise inv.violation_error(
                    f"Post-check failed: {inv.failure_message(**kwargs)}",
                    **inv.failure_context(**kwargs)
                )

        return result

    def _decide(self, inv: Invariant, check_type: str, check: Callable[[], bool]) -> EnforcementDecision:
        try:
            passed = bool(check())
        except Exception as e:
            logger.error(f"{check_type}-check exception: {inv.id}", exc_info=e)
            passed = False

        if passed:
            action = EnforcementResult.PROCEED
        elif check_type == "PRE":
            action = EnforcementResult.REJECT
        else:
            action = EnforcementResult.FREEZE

        timestamp = datetime.now(timezone.utc)
        decision = EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            result=passed,
            action=action,
            timestamp=timestamp,
            signature=_sign(inv.id, passed, timestamp)
        )
        self.ledger.record(decision)
        if self.on_decision is not None:
            self.on_decision(inv, decision)
        return decision
