"""
Business Management Service (BMS) - Invoice Builder
Version: 1.0.0

Turns a purchase request into a committed, immutable invoice.

Items are reserved one at a time in submission order. The first failing
item aborts the purchase and no invoice is written. Reservations already
applied to earlier items are kept: there is no compensation step, so a
caller that aborts (or times out) part way leaves that stock decremented.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional, Sequence
import threading
import time

from bms_config import get_settings
from bms_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    BMSError,
    ValidationError,
    logger
)
from bms_invariants_v1 import INVOICE_INVARIANTS, build_invariants
from bms_persistence_v1 import (
    Invoice,
    InvoiceLineItem,
    PersistenceGateway,
    InMemoryPersistenceGateway,
    Product,
    to_money
)
from bms_stock_ledger_v1 import StockLedger, Reservation

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class PurchaseItem:
    """One requested product/quantity pair."""
    product_id: Any
    quantity: Any

    @classmethod
    def coerce(cls, item: Any) -> "PurchaseItem":
        if isinstance(item, PurchaseItem):
            return item
        if isinstance(item, dict):
            return cls(product_id=item.get('product_id'), quantity=item.get('quantity'))
        return cls(product_id=getattr(item, 'product_id', None), quantity=getattr(item, 'quantity', None))

# ============================================
# INVOICE NUMBERS
# ============================================

class InvoiceNumberGenerator:
    """
    Time-based invoice numbers, strictly increasing within the process.

    A request landing in the same millisecond as the previous one gets the
    next integer, so generated numbers never collide here. Collisions with
    caller-supplied numbers are left to the store's unique index.
    """

    def __init__(self, prefix: Optional[str] = None, clock: Callable[[], int] = None):
        self.prefix = prefix if prefix is not None else get_settings().invoice_prefix
        self.clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._last = 0
        self._lock = threading.Lock()

    def next_number(self) -> str:
        with self._lock:
            millis = self.clock()
            if millis <= self._last:
                millis = self._last + 1
            self._last = millis
        return f"{self.prefix}{millis}"

# ============================================
# INVOICE CREATION SERVICE
# ============================================

class InvoiceCreationService:
    """Invoice builder: validate, reserve, price, commit."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        stock_ledger: StockLedger,
        ledger: DecisionLedger,
        number_generator: Optional[InvoiceNumberGenerator] = None
    ):
        self.gateway = gateway
        self.stock_ledger = stock_ledger
        self.ledger = ledger
        self.number_generator = number_generator or InvoiceNumberGenerator()
        self.enforcer = InvariantEnforcer(build_invariants(INVOICE_INVARIANTS), ledger)

        logger.info(f"[INVOICE_SERVICE] Initialized with {len(self.enforcer.invariants)} invariants")

    def create_invoice(
        self,
        customer_id: str,
        business_id: str,
        items: Sequence[Any],
        invoice_number: Optional[str] = None
    ) -> Invoice:
        """
        Create an invoice for items, reserving stock for each in order.

        Raises ValidationError (nothing reserved), NotFound or
        InsufficientStock (earlier items stay reserved; the error carries
        product_id, line_index and details['applied_reservations']) and
        PersistenceError from the commit. Nothing is retried.
        """
        if invoice_number is not None and not (isinstance(invoice_number, str) and invoice_number.strip()):
            raise ValidationError(f"invoice_number must be a non-empty string, got {invoice_number!r}")

        normalized = [PurchaseItem.coerce(item) for item in items] if isinstance(items, (list, tuple)) else items

        logger.info(
            f"[INVOICE_SERVICE] Purchase by {customer_id} at {business_id}: "
            f"{len(normalized) if isinstance(normalized, list) else 0} item(s)"
        )

        draft = self.enforcer.enforce_action(
            self._assemble_action,
            customer_id=customer_id,
            business_id=business_id,
            items=normalized,
            invoice_number=invoice_number
        )

        try:
            invoice_id = self.gateway.insert_invoice(draft)
        except BMSError as e:
            kept = [line.to_dict() for line in draft.line_items]
            e.details.setdefault('applied_reservations', kept)
            logger.error(f"[INVOICE_SERVICE] Commit failed ({e.kind}): {e.message}; {len(kept)} reservation(s) kept")
            raise

        invoice = self.gateway.find_invoice_by_id(invoice_id)
        logger.info(
            f"[INVOICE_SERVICE] Invoice {invoice.invoice_number} committed: "
            f"id={invoice.id} total={invoice.total_amount} lines={len(invoice.line_items)}"
        )
        return invoice

    def _assemble_action(
        self,
        customer_id: str,
        business_id: str,
        items: List[PurchaseItem],
        invoice_number: Optional[str]
    ) -> Invoice:
        applied: List[Reservation] = []
        line_items: List[InvoiceLineItem] = []
        total_amount = Decimal("0.00")

        for index, item in enumerate(items):
            try:
                reservation = self.stock_ledger.reserve(item.product_id, item.quantity)
                applied.append(reservation)
                line = InvoiceLineItem(
                    product_id=reservation.product_id,
                    quantity=reservation.quantity,
                    price_per_unit=reservation.unit_price
                )
                total_amount = to_money(total_amount + line.line_total)
            except BMSError as e:
                e.line_index = index
                if e.product_id is None:
                    e.product_id = item.product_id
                e.details.setdefault('applied_reservations', [r.to_dict() for r in applied])
                logger.warning(
                    f"[INVOICE_SERVICE] Purchase aborted at line {index} ({e.kind}, product={item.product_id}); "
                    f"{len(applied)} reservation(s) are not rolled back"
                )
                raise

            line_items.append(line)

        return Invoice(
            invoice_number=invoice_number or self.number_generator.next_number(),
            customer_id=customer_id,
            business_id=business_id,
            line_items=tuple(line_items),
            total_amount=total_amount,
            purchase_date=datetime.now(timezone.utc)
        )

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        """Retrieve invoice by ID."""
        return self.gateway.find_invoice_by_id(invoice_id)

    def list_invoices(
        self,
        customer_id: Optional[str] = None,
        business_id: Optional[str] = None
    ) -> List[Invoice]:
        """List all invoices, optionally filtered by customer or business."""
        invoices = self.gateway.list_invoices()

        if customer_id:
            invoices = [inv for inv in invoices if inv.customer_id == customer_id]
        if business_id:
            invoices = [inv for inv in invoices if inv.business_id == business_id]

        return invoices

# ============================================
# DEMONSTRATION
# ============================================

def demonstrate_purchase_flow():
    """Walk through a successful purchase and a partial-failure abort."""

    gateway = InMemoryPersistenceGateway()
    ledger = DecisionLedger()
    service = InvoiceCreationService(gateway, StockLedger(gateway, ledger), ledger)

    widget = gateway.insert_product(Product(name="Widget", price=Decimal("10"), business_id="BIZ-1", quantity=5))
    gadget = gateway.insert_product(Product(name="Gadget", price=Decimal("4.50"), business_id="BIZ-1", quantity=0))

    print("\n" + "="*80)
    print("PURCHASE 1: 2 x Widget")
    print("="*80)
    invoice = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': widget.id, 'quantity': 2}])
    print(f"✅ {invoice.invoice_number}: total={invoice.total_amount}, widget stock={gateway.find_product_by_id(widget.id).quantity}")

    print("\n" + "="*80)
    print("PURCHASE 2: 2 x Widget, 3 x Gadget (Gadget out of stock)")
    print("="*80)
    try:
        service.create_invoice("CUST-1", "BIZ-1", [
            {'product_id': widget.id, 'quantity': 2},
            {'product_id': gadget.id, 'quantity': 3}
        ])
    except BMSError as e:
        print(f"❌ {e.kind} on line {e.line_index} (product {e.product_id})")
        print(f"   Widget stock now {gateway.find_product_by_id(widget.id).quantity} (earlier reservation kept)")

    print(f"\nInvoices: {len(service.list_invoices())}, ledger integrity: {ledger.verify_chain_integrity()}")

if __name__ == "__main__":
    demonstrate_purchase_flow()
