"""
Business Management Service (BMS) - Test Suite
Version: 1.0.0

- Unit tests (invariants, gateway, ledger in isolation)
- Workflow tests (invoice builder, abort policy)
- Concurrency tests (no overselling under parallel reservations)
"""

import pytest
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from bms_enforcement_v1 import (
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,
    InvariantEnforcer,
    InvariantViolation,
    SystemCompromised,
    ValidationError,
    NotFound,
    InsufficientStock,
    PersistenceError,
    DuplicateInvoiceNumber
)
from bms_invariants_v1 import (
    PositiveReservationQuantity,
    KnownProductId,
    StockNeverNegative,
    NonEmptyPurchase,
    WellFormedPurchaseItems,
    LineItemsSumToTotal,
    LineOrderMatchesRequest
)
from bms_persistence_v1 import (
    InMemoryPersistenceGateway,
    Invoice,
    InvoiceLineItem,
    Product,
    to_money
)
from bms_stock_ledger_v1 import Reservation, StockLedger
from bms_invoice_service_v1 import (
    InvoiceCreationService,
    InvoiceNumberGenerator,
    PurchaseItem
)

# ============================================
# MOCK SERVICES
# ============================================

class SpyGateway(InMemoryPersistenceGateway):
    """Counts store calls and lets a test run code right after a decrement."""

    def __init__(self):
        super().__init__()
        self.decrement_calls = 0
        self.insert_calls = 0
        self.after_decrement = None

    def conditional_decrement(self, product_id: str, amount: int):
        self.decrement_calls += 1
        result = super().conditional_decrement(product_id, amount)
        if self.after_decrement is not None:
            self.after_decrement(product_id)
        return result

    def insert_invoice(self, invoice: Invoice) -> str:
        self.insert_calls += 1
        return super().insert_invoice(invoice)

class FailingCommitGateway(SpyGateway):
    """Store that is unavailable for invoice writes."""

    def insert_invoice(self, invoice: Invoice) -> str:
        self.insert_calls += 1
        raise PersistenceError("invoice store unavailable")

def seed(gateway, name: str, price, quantity: int, business_id: str = "BIZ-1") -> Product:
    return gateway.insert_product(Product(name=name, price=Decimal(str(price)), business_id=business_id, quantity=quantity))

def build(gateway=None, generator=None):
    gateway = gateway or SpyGateway()
    ledger = DecisionLedger()
    stock_ledger = StockLedger(gateway, ledger)
    service = InvoiceCreationService(gateway, stock_ledger, ledger, number_generator=generator)
    return gateway, ledger, stock_ledger, service

def stock(gateway, product: Product) -> int:
    return gateway.find_product_by_id(product.id).quantity

# ============================================
# UNIT TESTS - INVARIANTS
# ============================================

class TestPositiveReservationQuantity:
    """Test RES-001: positive integer quantities."""

    @pytest.mark.parametrize("quantity", [1, 2, 1000])
    def test_pre_check_valid(self, quantity):
        assert PositiveReservationQuantity().pre_check(quantity=quantity) == True

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True, None])
    def test_pre_check_invalid(self, quantity):
        assert PositiveReservationQuantity().pre_check(quantity=quantity) == False

    def test_raises_validation_error(self):
        assert PositiveReservationQuantity.violation_error is ValidationError

class TestKnownProductId:
    """Test RES-002: product id present."""

    def test_pre_check(self):
        inv = KnownProductId()
        assert inv.pre_check(product_id="abc") == True
        assert inv.pre_check(product_id="") == False
        assert inv.pre_check(product_id="   ") == False
        assert inv.pre_check(product_id=None) == False

class TestStockNeverNegative:
    """Test RES-003: quantity on hand stays non-negative."""

    def test_post_check_success(self):
        reservation = Reservation(product_id="P", quantity=2, unit_price=Decimal("10.00"), remaining=0)
        assert StockNeverNegative().post_check(reservation) == True

    def test_post_check_failure(self):
        reservation = Reservation(product_id="P", quantity=2, unit_price=Decimal("10.00"), remaining=-1)
        assert StockNeverNegative().post_check(reservation) == False

class TestPurchaseShapeInvariants:
    """Test INV-101/102: non-empty, well-formed purchases."""

    def test_empty_purchase_fails(self):
        assert NonEmptyPurchase().pre_check(items=[]) == False
        assert NonEmptyPurchase().pre_check(items=None) == False

    def test_non_empty_purchase_passes(self):
        assert NonEmptyPurchase().pre_check(items=[PurchaseItem("P", 1)]) == True

    def test_malformed_item_reported_by_position(self):
        inv = WellFormedPurchaseItems()
        items = [PurchaseItem("P", 1), PurchaseItem("Q", 0)]

        assert inv.pre_check(items=items) == False
        assert "position 1" in inv.failure_message(items=items)

class TestLineItemsSumToTotal:
    """Test INV-201: line totals sum to total."""

    def _invoice(self, total):
        lines = (
            InvoiceLineItem(product_id="A", quantity=2, price_per_unit=Decimal("10.00")),
            InvoiceLineItem(product_id="B", quantity=3, price_per_unit=Decimal("0.33")),
        )
        return Invoice(
            invoice_number="INV-1",
            customer_id="C",
            business_id="B",
            line_items=lines,
            total_amount=Decimal(total)
        )

    def test_post_check_success(self):
        assert LineItemsSumToTotal().post_check(self._invoice("20.99")) == True

    def test_post_check_mismatch(self):
        assert LineItemsSumToTotal().post_check(self._invoice("21.00")) == False

    def test_line_order_must_match_request(self):
        invoice = self._invoice("20.99")
        inv = LineOrderMatchesRequest()

        assert inv.post_check(invoice, items=[PurchaseItem("A", 2), PurchaseItem("B", 3)]) == True
        assert inv.post_check(invoice, items=[PurchaseItem("B", 3), PurchaseItem("A", 2)]) == False

# ============================================
# UNIT TESTS - ENFORCEMENT
# ============================================

class TestInvariantEnforcer:
    """Test pre/post enforcement and decision recording."""

    def test_pre_check_failure_skips_action(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([PositiveReservationQuantity()], ledger)
        calls = []

        with pytest.raises(ValidationError):
            enforcer.enforce_action(lambda **kw: calls.append(kw), product_id="P", quantity=0)

        assert calls == []
        assert ledger.entries[-1].result == False
        assert ledger.entries[-1].action == EnforcementResult.REJECT

    def test_post_check_failure_raises_system_compromised(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([StockNeverNegative()], ledger)

        def broken_store(**kwargs):
            return Reservation(product_id="P", quantity=1, unit_price=Decimal("1.00"), remaining=-1)

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(broken_store, product_id="P", quantity=1)

        assert ledger.entries[-1].check_type == "POST"
        assert ledger.entries[-1].action == EnforcementResult.FREEZE

    def test_dependency_order(self):
        enforcer = InvariantEnforcer([StockNeverNegative(), PositiveReservationQuantity()], DecisionLedger())
        ids = [inv.id for inv in enforcer.invariants]

        assert ids.index("res_001_positive_quantity") < ids.index("res_003_stock_non_negative")

    def test_circular_dependency_detected(self):
        a = PositiveReservationQuantity()
        b = KnownProductId()
        a.dependencies = [b.id]
        b.dependencies = [a.id]

        with pytest.raises(InvariantViolation):
            InvariantEnforcer([a, b], DecisionLedger())

    def test_on_decision_hook_sees_every_check(self):
        enforcer = InvariantEnforcer([KnownProductId()], DecisionLedger())
        seen = []
        enforcer.on_decision = lambda inv, decision: seen.append((inv.id, decision.check_type))

        enforcer.enforce_action(
            lambda **kw: Reservation(product_id="P", quantity=1, unit_price=Decimal("1.00"), remaining=0),
            product_id="P",
            quantity=1
        )

        assert seen == [("res_002_product_id_present", "PRE"), ("res_002_product_id_present", "POST")]

class TestDecisionLedger:
    """Test signed, append-only decision records."""

    def test_forged_decision_rejected(self):
        ledger = DecisionLedger()
        forged = EnforcementDecision(
            invariant_id="res_001_positive_quantity",
            check_type="PRE",
            result=True,
            action=EnforcementResult.PROCEED,
            timestamp=datetime.now(timezone.utc),
            signature="0" * 64
        )

        with pytest.raises(SystemCompromised):
            ledger.record(forged)

        assert len(ledger.entries) == 0

    def test_validation_rejects_leave_health_untouched(self):
        _, ledger, stock_ledger, _ = build()

        for _ in range(3):
            with pytest.raises(ValidationError):
                stock_ledger.reserve("P", 0)

        assert ledger.health_score() == 1.0
        assert ledger.verify_chain_integrity() == True

    def test_failed_post_check_lowers_health(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([StockNeverNegative()], ledger)

        enforcer.enforce_action(
            lambda **kw: Reservation(product_id="P", quantity=1, unit_price=Decimal("1.00"), remaining=0),
            product_id="P",
            quantity=1
        )
        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(
                lambda **kw: Reservation(product_id="P", quantity=1, unit_price=Decimal("1.00"), remaining=-1),
                product_id="P",
                quantity=1
            )

        assert ledger.health_score() == 0.5

    def test_ledger_keeps_only_recent_entries(self):
        gateway = InMemoryPersistenceGateway()
        ledger = DecisionLedger(max_entries=25)
        stock_ledger = StockLedger(gateway, ledger)
        product = seed(gateway, "Widget", 1, 100)

        for _ in range(40):
            stock_ledger.reserve(product.id, 1)

        assert len(ledger.entries) == 25
        assert ledger.health_score() == 1.0
        assert stock(gateway, product) == 60

# ============================================
# UNIT TESTS - PERSISTENCE GATEWAY
# ============================================

class TestInMemoryPersistenceGateway:
    """Test the guarded decrement and unique invoice numbers."""

    def test_conditional_decrement_applies_when_guard_holds(self):
        gateway = InMemoryPersistenceGateway()
        product = seed(gateway, "Widget", 10, 5)

        updated = gateway.conditional_decrement(product.id, 5)

        assert updated.quantity == 0
        assert stock(gateway, product) == 0

    def test_conditional_decrement_rejects_without_writing(self):
        gateway = InMemoryPersistenceGateway()
        product = seed(gateway, "Widget", 10, 5)

        assert gateway.conditional_decrement(product.id, 6) is None
        assert stock(gateway, product) == 5

    def test_conditional_decrement_unknown_product(self):
        assert InMemoryPersistenceGateway().conditional_decrement("missing", 1) is None

    def test_duplicate_invoice_number_rejected(self):
        gateway = InMemoryPersistenceGateway()
        invoice = Invoice(
            invoice_number="INV-1",
            customer_id="C",
            business_id="B",
            line_items=(InvoiceLineItem("P", 1, Decimal("1.00")),),
            total_amount=Decimal("1.00")
        )
        gateway.insert_invoice(invoice)

        with pytest.raises(DuplicateInvoiceNumber):
            gateway.insert_invoice(invoice)

        assert len(gateway.list_invoices()) == 1

    def test_price_stored_in_minor_units(self):
        gateway = InMemoryPersistenceGateway()
        product = seed(gateway, "Widget", "10.005", 1)

        assert product.price == Decimal("10.01")

    def test_update_unknown_product(self):
        with pytest.raises(NotFound):
            InMemoryPersistenceGateway().update_product("missing", price=Decimal("1"))

    def test_negative_stock_refused_by_model(self):
        with pytest.raises(ValueError):
            Product(name="Widget", price=Decimal("1"), business_id="B", quantity=-1)

    @pytest.mark.parametrize("value", ["1e27", "Infinity", "NaN", "ten"])
    def test_unrepresentable_amount_is_validation_error(self, value):
        with pytest.raises(ValidationError):
            to_money(value)

    def test_unrepresentable_price_not_stored(self):
        gateway = InMemoryPersistenceGateway()

        with pytest.raises(ValidationError):
            seed(gateway, "Widget", "1e27", 1)

        assert gateway.list_products() == []

    def test_delete_product(self):
        gateway = InMemoryPersistenceGateway()
        product = seed(gateway, "Widget", 10, 5)

        deleted = gateway.delete_product(product.id)

        assert deleted.id == product.id
        assert gateway.find_product_by_id(product.id) is None
        assert gateway.conditional_decrement(product.id, 1) is None

    def test_delete_unknown_product(self):
        with pytest.raises(NotFound):
            InMemoryPersistenceGateway().delete_product("missing")

# ============================================
# UNIT TESTS - STOCK LEDGER
# ============================================

class TestStockLedger:
    """Test reserve() outcomes."""

    def test_reserve_success(self):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 5)

        reservation = stock_ledger.reserve(product.id, 2)

        assert reservation.unit_price == Decimal("10.00")
        assert reservation.remaining == 3
        assert stock(gateway, product) == 3

    def test_reserve_unknown_product_leaves_ledger_untouched(self):
        gateway, _, stock_ledger, _ = build()
        a = seed(gateway, "A", 10, 5)
        b = seed(gateway, "B", 3, 7)

        with pytest.raises(NotFound) as exc_info:
            stock_ledger.reserve("does-not-exist", 1)

        assert exc_info.value.product_id == "does-not-exist"
        assert (stock(gateway, a), stock(gateway, b)) == (5, 7)

    def test_reserve_insufficient_stock(self):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 2)

        with pytest.raises(InsufficientStock) as exc_info:
            stock_ledger.reserve(product.id, 3)

        assert exc_info.value.available == 2
        assert exc_info.value.requested == 3
        assert stock(gateway, product) == 2

    def test_restock_after_failed_guard_still_rejects(self):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 2)

        # Stock arrives between the guarded decrement and the re-read
        gateway.after_decrement = lambda product_id: gateway.update_product(product_id, quantity=10)

        with pytest.raises(InsufficientStock) as exc_info:
            stock_ledger.reserve(product.id, 3)

        assert "at the time of the attempt" in exc_info.value.message
        assert exc_info.value.available == 10
        assert stock(gateway, product) == 10

    def test_reserve_deleted_product(self):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 5)
        gateway.delete_product(product.id)

        with pytest.raises(NotFound) as exc_info:
            stock_ledger.reserve(product.id, 1)

        assert exc_info.value.product_id == product.id

    @pytest.mark.parametrize("quantity", [0, -3])
    def test_non_positive_quantity_rejected_before_store(self, quantity):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 5)

        with pytest.raises(ValidationError):
            stock_ledger.reserve(product.id, quantity)

        assert gateway.decrement_calls == 0
        assert stock(gateway, product) == 5

    def test_exact_stock_can_be_reserved(self):
        gateway, _, stock_ledger, _ = build()
        product = seed(gateway, "Widget", 10, 4)

        assert stock_ledger.reserve(product.id, 4).remaining == 0
        assert stock_ledger.available(product.id) == 0

# ============================================
# WORKFLOW TESTS - INVOICE BUILDER
# ============================================

class TestInvoiceCreation:
    """Test createInvoice end to end against the in-memory store."""

    def test_single_item_purchase(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        invoice = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 2}])

        assert len(invoice.line_items) == 1
        assert invoice.line_items[0].line_total == Decimal("20")
        assert invoice.total_amount == Decimal("20")
        assert invoice.customer_id == "CUST-1"
        assert invoice.id is not None
        assert invoice.invoice_number.startswith("INV-")
        assert stock(gateway, a) == 3

    def test_later_item_out_of_stock_keeps_earlier_reservation(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)
        b = seed(gateway, "B", 7, 0)

        with pytest.raises(InsufficientStock) as exc_info:
            service.create_invoice("CUST-1", "BIZ-1", [
                {'product_id': a.id, 'quantity': 2},
                {'product_id': b.id, 'quantity': 3}
            ])

        err = exc_info.value
        assert err.product_id == b.id
        assert err.line_index == 1
        assert err.details['applied_reservations'][0]['product_id'] == a.id
        assert stock(gateway, a) == 3
        assert gateway.list_invoices() == []
        assert gateway.insert_calls == 0

    def test_first_failure_stops_processing(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)
        c = seed(gateway, "C", 1, 5)

        with pytest.raises(NotFound) as exc_info:
            service.create_invoice("CUST-1", "BIZ-1", [
                {'product_id': "missing", 'quantity': 1},
                {'product_id': a.id, 'quantity': 1},
                {'product_id': c.id, 'quantity': 1}
            ])

        assert exc_info.value.line_index == 0
        assert (stock(gateway, a), stock(gateway, c)) == (5, 5)

    def test_multi_item_totals(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", "10.00", 5)
        b = seed(gateway, "B", "0.35", 10)

        invoice = service.create_invoice("CUST-1", "BIZ-1", [
            PurchaseItem(a.id, 2),
            PurchaseItem(b.id, 3)
        ])

        assert [line.product_id for line in invoice.line_items] == [a.id, b.id]
        assert [line.line_total for line in invoice.line_items] == [Decimal("20.00"), Decimal("1.05")]
        assert invoice.total_amount == Decimal("21.05")

    @pytest.mark.parametrize("items", [
        [],
        None,
        [{'product_id': "P", 'quantity': 0}],
        [{'product_id': "", 'quantity': 1}],
        [{'quantity': 1}],
    ])
    def test_malformed_purchase_rejected_before_reserving(self, items):
        gateway, _, _, service = build()
        seed(gateway, "A", 10, 5)

        with pytest.raises(ValidationError):
            service.create_invoice("CUST-1", "BIZ-1", items)

        assert gateway.decrement_calls == 0

    def test_missing_business_rejected(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        with pytest.raises(ValidationError):
            service.create_invoice("CUST-1", "", [{'product_id': a.id, 'quantity': 1}])

        assert stock(gateway, a) == 5

    def test_malformed_item_identified_by_line(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        with pytest.raises(ValidationError) as exc_info:
            service.create_invoice("CUST-1", "BIZ-1", [
                {'product_id': a.id, 'quantity': 1},
                {'product_id': a.id, 'quantity': 0}
            ])

        assert exc_info.value.line_index == 1
        assert exc_info.value.product_id == a.id
        assert exc_info.value.to_dict()['line_index'] == 1
        assert stock(gateway, a) == 5

    def test_unrepresentable_line_total_reported_with_reservation(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", "1e20", 10**9)

        with pytest.raises(ValidationError) as exc_info:
            service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 10**9}])

        err = exc_info.value
        assert err.product_id == a.id
        assert err.line_index == 0
        assert [r['quantity'] for r in err.details['applied_reservations']] == [10**9]
        assert stock(gateway, a) == 0
        assert gateway.insert_calls == 0

    def test_price_captured_at_purchase_time(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        invoice = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}])
        gateway.update_product(a.id, price=Decimal("99"))

        stored = service.get_invoice(invoice.id)
        assert stored.line_items[0].price_per_unit == Decimal("10.00")
        assert stored.total_amount == Decimal("10.00")

    def test_each_line_priced_at_its_own_reservation(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)
        b = seed(gateway, "B", 5, 5)

        # Price of B changes while A is being reserved
        def reprice(product_id):
            if product_id == a.id:
                gateway.update_product(b.id, price=Decimal("6"))
        gateway.after_decrement = reprice

        invoice = service.create_invoice("CUST-1", "BIZ-1", [
            {'product_id': a.id, 'quantity': 1},
            {'product_id': b.id, 'quantity': 1}
        ])

        assert [line.price_per_unit for line in invoice.line_items] == [Decimal("10.00"), Decimal("6.00")]
        assert invoice.total_amount == Decimal("16.00")

    def test_commit_failure_propagates_without_retry(self):
        gateway, _, _, service = build(gateway=FailingCommitGateway())
        a = seed(gateway, "A", 10, 5)

        with pytest.raises(PersistenceError) as exc_info:
            service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 2}])

        assert gateway.insert_calls == 1
        assert stock(gateway, a) == 3
        assert len(exc_info.value.details['applied_reservations']) == 1

    def test_explicit_duplicate_invoice_number_rejected(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}], invoice_number="INV-42")

        with pytest.raises(DuplicateInvoiceNumber):
            service.create_invoice("CUST-2", "BIZ-1", [{'product_id': a.id, 'quantity': 1}], invoice_number="INV-42")

        assert len(service.list_invoices()) == 1
        # The second purchase's reservation is not compensated
        assert stock(gateway, a) == 3

    def test_blank_invoice_number_rejected(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)

        with pytest.raises(ValidationError):
            service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}], invoice_number="  ")

        assert stock(gateway, a) == 5

    def test_reading_invoice_twice_is_identical(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)
        invoice = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 2}])

        first = service.get_invoice(invoice.id).to_dict()
        second = service.get_invoice(invoice.id).to_dict()

        assert first == second
        assert repr(first) == repr(second)

    def test_invoice_is_immutable(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 5)
        invoice = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 2}])

        with pytest.raises(AttributeError):
            invoice.total_amount = Decimal("0")

    def test_list_invoices_filters(self):
        gateway, _, _, service = build()
        a = seed(gateway, "A", 10, 10)
        service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}])
        service.create_invoice("CUST-2", "BIZ-2", [{'product_id': a.id, 'quantity': 1}])

        assert len(service.list_invoices()) == 2
        assert [i.customer_id for i in service.list_invoices(customer_id="CUST-2")] == ["CUST-2"]
        assert [i.business_id for i in service.list_invoices(business_id="BIZ-1")] == ["BIZ-1"]

# ============================================
# UNIT TESTS - INVOICE NUMBERS
# ============================================

class TestInvoiceNumberGenerator:
    """Test time-based numbering."""

    def test_same_millisecond_does_not_collide(self):
        generator = InvoiceNumberGenerator(prefix="INV-", clock=lambda: 1000)

        assert [generator.next_number() for _ in range(3)] == ["INV-1000", "INV-1001", "INV-1002"]

    def test_clock_moving_backwards_stays_increasing(self):
        ticks = iter([5000, 4000, 6000])
        generator = InvoiceNumberGenerator(prefix="INV-", clock=lambda: next(ticks))

        assert [generator.next_number() for _ in range(3)] == ["INV-5000", "INV-5001", "INV-6000"]

    def test_invoices_in_same_millisecond(self):
        generator = InvoiceNumberGenerator(prefix="INV-", clock=lambda: 1700000000000)
        gateway, _, _, service = build(generator=generator)
        a = seed(gateway, "A", 10, 5)

        first = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}])
        second = service.create_invoice("CUST-1", "BIZ-1", [{'product_id': a.id, 'quantity': 1}])

        assert first.invoice_number != second.invoice_number

# ============================================
# CONCURRENCY TESTS
# ============================================

class TestConcurrentReservations:
    """Test that parallel purchasers never oversell."""

    def test_unit_reservations_never_exceed_stock(self):
        gateway, _, stock_ledger, _ = build(gateway=InMemoryPersistenceGateway())
        product = seed(gateway, "Widget", 10, 20)
        barrier = threading.Barrier(50)

        def attempt():
            barrier.wait()
            try:
                return stock_ledger.reserve(product.id, 1).quantity
            except InsufficientStock:
                return 0

        with ThreadPoolExecutor(max_workers=50) as pool:
            results = list(pool.map(lambda _: attempt(), range(50)))

        assert sum(results) == 20
        assert stock(gateway, product) == 0

    @pytest.mark.parametrize("seed_value", [1, 2, 3])
    def test_mixed_quantities_never_exceed_stock(self, seed_value):
        rng = random.Random(seed_value)
        quantities: List[int] = [rng.randint(1, 7) for _ in range(40)]

        gateway, _, stock_ledger, _ = build(gateway=InMemoryPersistenceGateway())
        product = seed(gateway, "Widget", 10, 60)

        def attempt(quantity):
            try:
                return stock_ledger.reserve(product.id, quantity).quantity
            except InsufficientStock:
                return 0

        with ThreadPoolExecutor(max_workers=16) as pool:
            reserved = sum(pool.map(attempt, quantities))

        assert reserved <= 60
        assert stock(gateway, product) == 60 - reserved
        assert stock(gateway, product) >= 0

    def test_concurrent_invoices(self):
        gateway, _, _, service = build(gateway=InMemoryPersistenceGateway())
        product = seed(gateway, "Widget", "2.50", 10)

        def purchase(customer):
            try:
                return service.create_invoice(customer, "BIZ-1", [{'product_id': product.id, 'quantity': 3}])
            except InsufficientStock:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            invoices = [inv for inv in pool.map(purchase, [f"CUST-{i}" for i in range(8)]) if inv]

        assert len(invoices) == 3
        assert stock(gateway, product) == 1
        assert len({inv.invoice_number for inv in invoices}) == 3
        assert all(inv.total_amount == Decimal("7.50") for inv in invoices)

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
