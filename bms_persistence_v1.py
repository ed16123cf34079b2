"""
Business Management Service (BMS) - Persistence Gateway
Version: 1.0.0

Product and invoice records plus the storage contract the core depends on.
The in-memory adapter offers the two guarantees the core relies on:
single-document atomic guarded decrement and a unique invoice_number index.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
import threading
import uuid

from bms_enforcement_v1 import DuplicateInvoiceNumber, NotFound, PersistenceError, ValidationError, logger

MONEY_QUANTUM = Decimal("0.01")

def to_money(value: Any) -> Decimal:
    """Quantize a price or amount to minor units. Raises ValidationError."""
    try:
        amount = Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite():
        raise ValidationError(f"Amount {value!r} is not representable in minor units")
    return amount

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class Product:
    """Product with quantity on hand."""
    name: str
    price: Decimal
    business_id: str
    quantity: int = 0
    description: Optional[str] = None
    id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.price < 0:
            raise ValueError(f"price must be non-negative, got {self.price}")
        if self.quantity < 0:
            raise ValueError(f"quantity must be non-negative, got {self.quantity}")

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'price': str(self.price),
            'quantity': self.quantity,
            'business_id': self.business_id,
            'created_at': self.created_at.isoformat()
        }

@dataclass(frozen=True)
class InvoiceLineItem:
    """Priced product/quantity entry, embedded in an invoice."""
    product_id: str
    quantity: int
    price_per_unit: Decimal

    @property
    def line_total(self) -> Decimal:
        return to_money(self.quantity * self.price_per_unit)

    def to_dict(self) -> Dict:
        return {
            'product_id': self.product_id,
            'quantity': self.quantity,
            'price_per_unit': str(self.price_per_unit),
            'line_total': str(self.line_total)
        }

@dataclass(frozen=True)
class Invoice:
    """Invoice entity. Never updated once committed."""
    invoice_number: str
    customer_id: str
    business_id: str
    line_items: Tuple[InvoiceLineItem, ...]
    total_amount: Decimal
    purchase_date: datetime = field(default_factory=_utcnow)
    id: Optional[str] = None

    def to_dict(self) -> Dict:
        """Serialize to dictionary."""
        return {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'customer_id': self.customer_id,
            'business_id': self.business_id,
            'line_items': [item.to_dict() for item in self.line_items],
            'total_amount': str(self.total_amount),
            'purchase_date': self.purchase_date.isoformat()
        }

# ============================================
# GATEWAY CONTRACT
# ============================================

class PersistenceGateway(ABC):
    """Storage operations consumed by the stock ledger and invoice builder."""

    @abstractmethod
    def find_product_by_id(self, product_id: str) -> Optional[Product]:
        """Return the product or None."""

    @abstractmethod
    def conditional_decrement(self, product_id: str, amount: int) -> Optional[Product]:
        """
        Atomically decrement quantity by amount where quantity >= amount.

        Returns the updated product, or None when the product is missing or
        the guard did not match. Nothing is written in the None case.
        """

    @abstractmethod
    def insert_invoice(self, invoice: Invoice) -> str:
        """Store a new invoice and return its id. Raises DuplicateInvoiceNumber."""

    @abstractmethod
    def find_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        """Return the invoice or None."""

    @abstractmethod
    def list_invoices(self) -> List[Invoice]:
        """Invoices in insertion order."""

    @abstractmethod
    def insert_product(self, product: Product) -> Product:
        """Store a new product, assigning its id."""

    @abstractmethod
    def update_product(self, product_id: str, **changes) -> Product:
        """Apply field changes to a product. Raises NotFound."""

    @abstractmethod
    def delete_product(self, product_id: str) -> Product:
        """Remove a product and return it. Raises NotFound."""

    @abstractmethod
    def list_products(self, business_id: Optional[str] = None) -> List[Product]:
        """Products, optionally filtered by owning business."""

# ============================================
# IN-MEMORY ADAPTER
# ============================================

class InMemoryPersistenceGateway(PersistenceGateway):
    """
    Thread-safe in-memory store.

    Each product has its own lock so reservations on different products run
    in parallel; invoices share one lock that also guards the unique index.
    """

    UPDATABLE_PRODUCT_FIELDS = ('name', 'description', 'price', 'quantity')

    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.invoice_numbers: Dict[str, str] = {}  # invoice_number -> invoice_id
        self._product_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._invoice_lock = threading.Lock()

    def _product_lock(self, product_id: str) -> Optional[threading.Lock]:
        with self._registry_lock:
            return self._product_locks.get(product_id)

    # ----- products -----

    def insert_product(self, product: Product) -> Product:
        product_id = product.id or uuid.uuid4().hex
        stored = replace(product, id=product_id, price=to_money(product.price))
        with self._registry_lock:
            if product_id in self.products:
                raise PersistenceError(f"Product {product_id} already exists", product_id=product_id)
            self._product_locks[product_id] = threading.Lock()
            self.products[product_id] = stored
        logger.info(f"[STORAGE] Created product {product_id} ({stored.name}) qty={stored.quantity}")
        return stored

    def find_product_by_id(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    def list_products(self, business_id: Optional[str] = None) -> List[Product]:
        products = list(self.products.values())
        if business_id:
            products = [p for p in products if p.business_id == business_id]
        return products

    def update_product(self, product_id: str, **changes) -> Product:
        unknown = set(changes) - set(self.UPDATABLE_PRODUCT_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update product fields: {sorted(unknown)}")
        if 'price' in changes:
            changes['price'] = to_money(changes['price'])

        lock = self._product_lock(product_id)
        if lock is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)

        with lock:
            current = self.products.get(product_id)
            if current is None:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            updated = replace(current, **changes)
            self.products[product_id] = updated

        logger.info(f"[STORAGE] Updated product {product_id}: {sorted(changes)}")
        return updated

    def delete_product(self, product_id: str) -> Product:
        with self._registry_lock:
            lock = self._product_locks.pop(product_id, None)
            if lock is None:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            # Wait out a reservation already holding the product lock
            with lock:
                product = self.products.pop(product_id)

        logger.info(f"[STORAGE] Deleted product {product_id} ({product.name})")
        return product

    def conditional_decrement(self, product_id: str, amount: int) -> Optional[Product]:
        lock = self._product_lock(product_id)
        if lock is None:
            return None

        with lock:
            product = self.products.get(product_id)
            if product is None or product.quantity < amount:
                return None
            updated = replace(product, quantity=product.quantity - amount)
            self.products[product_id] = updated

        return updated

    # ----- invoices -----

    def insert_invoice(self, invoice: Invoice) -> str:
        invoice_id = uuid.uuid4().hex
        with self._invoice_lock:
            if invoice.invoice_number in self.invoice_numbers:
                raise DuplicateInvoiceNumber(
                    f"Invoice number {invoice.invoice_number} already exists",
                    details={'invoice_number': invoice.invoice_number}
                )
            self.invoices[invoice_id] = replace(invoice, id=invoice_id)
            self.invoice_numbers[invoice.invoice_number] = invoice_id

        logger.info(f"[STORAGE] Created invoice {invoice_id} ({invoice.invoice_number})")
        return invoice_id

    def find_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        return self.invoices.get(invoice_id)

    def list_invoices(self) -> List[Invoice]:
        with self._invoice_lock:
            return list(self.invoices.values())
