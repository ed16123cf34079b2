"""
Business Management Service (BMS) - Invariants
Version: 1.0.0

Pre/post checks guarding stock reservations and invoice assembly.
"""

from decimal import Decimal
from typing import Any, Dict, List, Sequence

from bms_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    ValidationError,
    SystemCompromised,
    logger
)

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0

# ============================================
# RESERVATION INVARIANTS
# ============================================

class PositiveReservationQuantity(Invariant):
    """RES-001: Reservations must request a positive integer quantity."""

    violation_error = ValidationError

    def __init__(self):
        super().__init__(
            id="res_001_positive_quantity",
            statement="Reservation quantity MUST be a positive integer",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[]
        )

    def pre_check(self, quantity: Any, **kwargs) -> bool:
        valid = _is_positive_int(quantity)
        logger.info(f"PRE-CHECK {self.id}: quantity={quantity!r}, valid={valid}")
        return valid

    def post_check(self, result: Any, **kwargs) -> bool:
        return result.quantity == kwargs['quantity']

    def failure_message(self, quantity: Any = None, **kwargs) -> str:
        return f"Quantity must be a positive integer, got {quantity!r}"

class KnownProductId(Invariant):
    """RES-002: Reservations must name a product."""

    violation_error = ValidationError

    def __init__(self):
        super().__init__(
            id="res_002_product_id_present",
            statement="Reservation MUST reference a non-empty product id",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[]
        )

    def pre_check(self, product_id: Any, **kwargs) -> bool:
        return isinstance(product_id, str) and bool(product_id.strip())

    def post_check(self, result: Any, **kwargs) -> bool:
        return result.product_id == kwargs['product_id']

    def failure_message(self, product_id: Any = None, **kwargs) -> str:
        return f"Product id must be a non-empty string, got {product_id!r}"

class StockNeverNegative(Invariant):
    """RES-003: Quantity on hand never drops below zero."""

    violation_error = SystemCompromised

    def __init__(self):
        super().__init__(
            id="res_003_stock_non_negative",
            statement="It is FORBIDDEN for quantity on hand to drop below zero",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["res_001_positive_quantity"]
        )

    def pre_check(self, **kwargs) -> bool:
        # The guarded decrement is the check; nothing to read beforehand
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        valid = result.remaining >= 0
        logger.info(f"POST-CHECK {self.id}: product={result.product_id}, remaining={result.remaining}, valid={valid}")
        return valid

# ============================================
# INVOICE INVARIANTS
# ============================================

class NonEmptyPurchase(Invariant):
    """INV-101: A purchase lists at least one item."""

    violation_error = ValidationError

    def __init__(self):
        super().__init__(
            id="inv_101_non_empty_purchase",
            statement="A purchase MUST contain at least one item",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[]
        )

    def pre_check(self, items: Sequence, **kwargs) -> bool:
        valid = isinstance(items, (list, tuple)) and len(items) > 0
        logger.info(f"PRE-CHECK {self.id}: items={len(items) if valid else items!r}, valid={valid}")
        return valid

    def post_check(self, result: Any, **kwargs) -> bool:
        return len(result.line_items) > 0

    def failure_message(self, **kwargs) -> str:
        return "Products list is required"

class WellFormedPurchaseItems(Invariant):
    """INV-102: Every item names a product and a positive quantity."""

    violation_error = ValidationError

    def __init__(self):
        super().__init__(
            id="inv_102_well_formed_items",
            statement="Every purchase item MUST have a product id and a positive integer quantity",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_101_non_empty_purchase"]
        )

    def _first_bad_index(self, items: Sequence) -> int:
        for index, item in enumerate(items):
            product_id = getattr(item, 'product_id', None)
            if not (isinstance(product_id, str) and product_id.strip()) or not _is_positive_int(item.quantity):
                return index
        return -1

    def pre_check(self, items: Sequence, **kwargs) -> bool:
        return self._first_bad_index(items) == -1

    def post_check(self, result: Any, **kwargs) -> bool:
        return all(line.quantity > 0 for line in result.line_items)

    def failure_message(self, items: Sequence = (), **kwargs) -> str:
        index = self._first_bad_index(items) if isinstance(items, (list, tuple)) else -1
        return f"Malformed purchase item at position {index}: product_id and positive quantity required"

    def failure_context(self, items: Sequence = (), **kwargs) -> Dict[str, Any]:
        index = self._first_bad_index(items) if isinstance(items, (list, tuple)) else -1
        if index < 0:
            return {}
        product_id = getattr(items[index], 'product_id', None)
        return {
            'line_index': index,
            'product_id': product_id if isinstance(product_id, str) and product_id.strip() else None
        }

class PartiesPresent(Invariant):
    """INV-103: An invoice references a customer and a business."""

    violation_error = ValidationError

    def __init__(self):
        super().__init__(
            id="inv_103_parties_present",
            statement="An invoice MUST reference a customer and a business",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[]
        )

    def pre_check(self, customer_id: Any, business_id: Any, **kwargs) -> bool:
        return all(isinstance(v, str) and v.strip() for v in (customer_id, business_id))

    def post_check(self, result: Any, **kwargs) -> bool:
        return bool(result.customer_id) and bool(result.business_id)

    def failure_message(self, **kwargs) -> str:
        return "customer_id and business_id are required"

class LineItemsSumToTotal(Invariant):
    """INV-201: Sum of line totals equals the invoice total."""

    violation_error = SystemCompromised

    def __init__(self):
        super().__init__(
            id="inv_201_line_items_sum",
            statement="The system MUST always ensure line item totals sum exactly to the invoice total",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_101_non_empty_purchase"]
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        line_items_sum = sum((line.line_total for line in result.line_items), Decimal("0"))
        matches = line_items_sum == result.total_amount
        logger.info(f"POST-CHECK {self.id}: line_items_sum={line_items_sum}, total={result.total_amount}, valid={matches}")

        if not matches:
            logger.error(f"LINE ITEMS MISMATCH: Sum {line_items_sum} != Total {result.total_amount}")

        return matches

class LineOrderMatchesRequest(Invariant):
    """INV-202: Line items follow submission order one-for-one."""

    violation_error = SystemCompromised

    def __init__(self):
        super().__init__(
            id="inv_202_line_order",
            statement="Line items MUST appear in submission order, one per requested item",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=["inv_102_well_formed_items"]
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, items: Sequence = (), **kwargs) -> bool:
        requested = [(item.product_id, item.quantity) for item in items]
        produced = [(line.product_id, line.quantity) for line in result.line_items]
        return requested == produced

RESERVATION_INVARIANTS: List[type] = [
    KnownProductId,
    PositiveReservationQuantity,
    StockNeverNegative
]

INVOICE_INVARIANTS: List[type] = [
    PartiesPresent,
    NonEmptyPurchase,
    WellFormedPurchaseItems,
    LineItemsSumToTotal,
    LineOrderMatchesRequest
]

def build_invariants(kinds: List[type]) -> List[Invariant]:
    return [kind() for kind in kinds]

def describe(invariants: List[Invariant]) -> Dict[str, str]:
    """Invariant id -> statement, for the health endpoint."""
    return {inv.id: inv.statement for inv in invariants}
