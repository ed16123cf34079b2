"""
Business Management Service (BMS) - Stock Ledger
Version: 1.0.0

Sole gate for decrementing quantity on hand. Every reservation is one
guarded decrement against the store, so concurrent purchasers of the same
product can never oversell it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

from bms_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    NotFound,
    InsufficientStock,
    logger
)
from bms_invariants_v1 import RESERVATION_INVARIANTS, build_invariants
from bms_persistence_v1 import PersistenceGateway

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class Reservation:
    """Outcome of a successful reservation."""
    product_id: str
    quantity: int
    unit_price: Decimal
    remaining: int

    def to_dict(self) -> Dict:
        return {
            'product_id': self.product_id,
            'quantity': self.quantity,
            'unit_price': str(self.unit_price),
            'remaining': self.remaining
        }

# ============================================
# STOCK LEDGER
# ============================================

class StockLedger:
    """Reserves stock through the persistence gateway's guarded decrement."""

    def __init__(self, gateway: PersistenceGateway, ledger: DecisionLedger):
        self.gateway = gateway
        self.enforcer = InvariantEnforcer(build_invariants(RESERVATION_INVARIANTS), ledger)

    def reserve(self, product_id: str, quantity: int) -> Reservation:
        """
        Atomically take quantity units of product_id out of stock.

        Raises ValidationError before touching the store when quantity is not
        a positive integer, NotFound for an unknown product and
        InsufficientStock when quantity exceeded what was on hand at the
        moment of the decrement. The reported available count comes from a
        later read and may already differ. The unit
        price returned is the one in effect at the moment of the decrement.
        """
        return self.enforcer.enforce_action(self._reserve_action, product_id=product_id, quantity=quantity)

    def _reserve_action(self, product_id: str, quantity: int) -> Reservation:
        updated = self.gateway.conditional_decrement(product_id, quantity)

        if updated is None:
            # Guard did not match; classify from a fresh read, nothing was written
            current = self.gateway.find_product_by_id(product_id)
            if current is None:
                logger.warning(f"[LEDGER] Reservation rejected: product {product_id} not found")
                raise NotFound(f"Product {product_id} not found", product_id=product_id)

            logger.warning(
                f"[LEDGER] Reservation rejected: product {product_id} "
                f"requested={quantity} available={current.quantity}"
            )
            if current.quantity >= quantity:
                logger.warning(f"[LEDGER] Stock of {product_id} changed between the guarded decrement and the re-read")
            raise InsufficientStock(product_id, requested=quantity, available=current.quantity)

        logger.info(f"[LEDGER] Reserved {quantity} x {product_id} @ {updated.price}, remaining={updated.quantity}")

        return Reservation(
            product_id=product_id,
            quantity=quantity,
            unit_price=updated.price,
            remaining=updated.quantity
        )

    def available(self, product_id: str) -> int:
        """Current quantity on hand."""
        product = self.gateway.find_product_by_id(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        return product.quantity
