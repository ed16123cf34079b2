"""
Business Management Service - FastAPI Application
Purchases, invoices and product stock with role-based access
"""

from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Any, List, Optional
import logging
import time
from contextlib import asynccontextmanager

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from bms_config import get_settings
from bms_auth_v1 import AuthGateway, Principal, Role, require_role
from bms_enforcement_v1 import (
    BMSError,
    DecisionLedger,
    EnforcementDecision,
    Invariant,
    NotFound,
    Unauthorized,
    ValidationError
)
from bms_invariants_v1 import describe
from bms_invoice_service_v1 import InvoiceCreationService
from bms_persistence_v1 import InMemoryPersistenceGateway, Invoice, PersistenceGateway, Product
from bms_stock_ledger_v1 import StockLedger
from bms_metrics import (
    metrics_registry,
    system_health_gauge,
    record_api_request,
    record_invariant_check,
    record_invoice_created,
    record_rejection,
    record_reservation
)

settings = get_settings()
logger = logging.getLogger("bms.api")

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class PurchaseItemRequest(BaseModel):
    product_id: str
    quantity: int

class InvoiceCreateRequest(BaseModel):
    business_id: str = Field(..., min_length=1)
    # Emptiness and quantity sign are checked by the invoice builder
    items: List[PurchaseItemRequest]
    invoice_number: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "business_id": "BIZ-001",
                "items": [
                    {"product_id": "5f2b0c...", "quantity": 2}
                ]
            }
        }

class LineItemResponse(BaseModel):
    product_id: str
    quantity: int
    price_per_unit: str
    line_total: str

class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    customer_id: str
    business_id: str
    line_items: List[LineItemResponse]
    total_amount: str
    purchase_date: str

    class Config:
        json_schema_extra = {
            "example": {
                "id": "9c1e4f...",
                "invoice_number": "INV-1760870400000",
                "customer_id": "USR-001",
                "business_id": "BIZ-001",
                "line_items": [
                    {"product_id": "5f2b0c...", "quantity": 2, "price_per_unit": "10.00", "line_total": "20.00"}
                ],
                "total_amount": "20.00",
                "purchase_date": "2026-10-19T12:00:00+00:00"
            }
        }

class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    quantity: int = Field(0, ge=0)
    business_id: Optional[str] = None

class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    quantity: Optional[int] = Field(None, ge=0)

class ProductResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    price: str
    quantity: int
    business_id: str
    created_at: str

class QuantityDecrementRequest(BaseModel):
    decrement_by: int

class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    total_products: int
    total_invoices: int
    ledger_integrity: bool
    invariants: dict

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Wires the gateway, ledgers and services for one process."""

    def __init__(self, gateway: Optional[PersistenceGateway] = None):
        self.gateway = gateway or InMemoryPersistenceGateway()
        self.decision_ledger = DecisionLedger()
        self.auth_gateway = AuthGateway()
        self.stock_ledger = StockLedger(self.gateway, self.decision_ledger)
        self.invoice_service = InvoiceCreationService(
            self.gateway,
            self.stock_ledger,
            self.decision_ledger
        )

        for enforcer in (self.stock_ledger.enforcer, self.invoice_service.enforcer):
            enforcer.on_decision = _record_decision

def _record_decision(inv: Invariant, decision: EnforcementDecision):
    record_invariant_check(inv.id, decision.check_type, decision.result, inv.type.value, inv.criticality.value)

app_state = AppState()

def get_state() -> AppState:
    return app_state

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info(f"{settings.service_name} {settings.version} starting...")
    yield
    logger.info(f"{settings.service_name} shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title=settings.service_name,
    description="Invoices and stock reservations for business management",
    version=settings.version,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def observe_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    record_api_request(endpoint, request.method, response.status_code, time.perf_counter() - start)
    return response

# ============================================
# AUTHENTICATION
# ============================================

bearer_scheme = HTTPBearer(auto_error=False)

def current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    state: AppState = Depends(get_state)
) -> Principal:
    token = credentials.credentials if credentials else None
    return state.auth_gateway.resolve(token)

def requires(*roles: Role):
    """Dependency allowing only the given roles."""
    def dependency(principal: Principal = Depends(current_principal)) -> Principal:
        return require_role(principal, *roles)
    return dependency

# ============================================
# RESPONSE HELPERS
# ============================================

def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(**invoice.to_dict())

def _product_response(product: Product) -> ProductResponse:
    return ProductResponse(**product.to_dict())

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
def root():
    """Root endpoint."""
    return {
        "service": settings.service_name,
        "version": settings.version,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check(state: AppState = Depends(get_state)):
    """System health check."""
    health_score = state.decision_ledger.health_score()
    system_health_gauge.set(health_score)

    return HealthResponse(
        status="healthy" if health_score >= 0.95 else "degraded",
        version=settings.version,
        health_score=health_score,
        total_products=len(state.gateway.list_products()),
        total_invoices=len(state.gateway.list_invoices()),
        ledger_integrity=state.decision_ledger.verify_chain_integrity(),
        invariants={
            **describe(state.stock_ledger.enforcer.invariants),
            **describe(state.invoice_service.enforcer.invariants)
        }
    )

@app.post("/api/v1/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED, tags=["Invoices"])
def create_invoice(
    request: InvoiceCreateRequest,
    principal: Principal = Depends(requires(Role.CUSTOMER)),
    state: AppState = Depends(get_state)
):
    """
    Purchase items and create an invoice (customer only).

    Items are reserved in order; the first unavailable item aborts the
    purchase and is reported with its product_id and line_index. Stock
    reserved for earlier items is not released.
    """
    invoice = state.invoice_service.create_invoice(
        customer_id=principal.user_id,
        business_id=request.business_id,
        items=[item.model_dump() for item in request.items],
        invoice_number=request.invoice_number
    )

    record_invoice_created(
        business_id=invoice.business_id,
        amount=float(invoice.total_amount),
        lines=len(invoice.line_items),
        reserved_units=sum(line.quantity for line in invoice.line_items)
    )

    return _invoice_response(invoice)

@app.get("/api/v1/invoices", response_model=List[InvoiceResponse], tags=["Invoices"])
def list_invoices(
    customer_id: Optional[str] = None,
    business_id: Optional[str] = None,
    principal: Principal = Depends(requires(Role.ADMIN, Role.MANAGER)),
    state: AppState = Depends(get_state)
):
    """List invoices (admin/manager only)."""
    invoices = state.invoice_service.list_invoices(customer_id=customer_id, business_id=business_id)
    return [_invoice_response(inv) for inv in invoices]

@app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"])
def get_invoice(
    invoice_id: str,
    principal: Principal = Depends(current_principal),
    state: AppState = Depends(get_state)
):
    """Get invoice by ID. Customers may only read their own invoices."""
    invoice = state.invoice_service.get_invoice(invoice_id)

    if not invoice:
        raise NotFound(f"Invoice {invoice_id} not found")

    if principal.role == Role.CUSTOMER and invoice.customer_id != principal.user_id:
        raise Unauthorized("Unauthorized access")

    return _invoice_response(invoice)

@app.get("/api/v1/products", response_model=List[ProductResponse], tags=["Products"])
def list_products(business_id: Optional[str] = None, state: AppState = Depends(get_state)):
    """List products, optionally for one business."""
    return [_product_response(p) for p in state.gateway.list_products(business_id)]

@app.get("/api/v1/products/{product_id}", response_model=ProductResponse, tags=["Products"])
def get_product(product_id: str, state: AppState = Depends(get_state)):
    """Get product by ID."""
    product = state.gateway.find_product_by_id(product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found", product_id=product_id)
    return _product_response(product)

@app.post("/api/v1/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED, tags=["Products"])
def create_product(
    request: ProductCreateRequest,
    principal: Principal = Depends(requires(Role.ADMIN, Role.MANAGER)),
    state: AppState = Depends(get_state)
):
    """Create a product (admin/manager only)."""
    business_id = request.business_id or principal.business_id
    if not business_id:
        raise ValidationError("business_id is required")

    product = state.gateway.insert_product(Product(
        name=request.name,
        description=request.description,
        price=request.price,
        quantity=request.quantity,
        business_id=business_id
    ))
    return _product_response(product)

@app.put("/api/v1/products/{product_id}", response_model=ProductResponse, tags=["Products"])
def update_product(
    product_id: str,
    request: ProductUpdateRequest,
    principal: Principal = Depends(requires(Role.ADMIN, Role.MANAGER)),
    state: AppState = Depends(get_state)
):
    """Update product details, price or stock (admin/manager only)."""
    changes = request.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update", product_id=product_id)
    product = state.gateway.update_product(product_id, **changes)
    return _product_response(product)

@app.delete("/api/v1/products/{product_id}", tags=["Products"])
def delete_product(
    product_id: str,
    principal: Principal = Depends(requires(Role.ADMIN, Role.MANAGER)),
    state: AppState = Depends(get_state)
):
    """Delete a product (admin/manager only). Existing invoices keep their line items."""
    state.gateway.delete_product(product_id)
    return {"message": "Product deleted"}

@app.patch("/api/v1/products/{product_id}/quantity", tags=["Products"])
def purchase_product(
    product_id: str,
    request: QuantityDecrementRequest,
    principal: Principal = Depends(requires(Role.CUSTOMER)),
    state: AppState = Depends(get_state)
):
    """Buy a single product without an invoice (customer only)."""
    reservation = state.stock_ledger.reserve(product_id, request.decrement_by)
    record_reservation(reservation.quantity)
    return {"message": "Product purchased", "remaining": reservation.remaining}

@app.get("/metrics", tags=["Observability"])
def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

STATUS_BY_KIND = {
    'ValidationError': status.HTTP_400_BAD_REQUEST,
    'Unauthenticated': status.HTTP_401_UNAUTHORIZED,
    'Unauthorized': status.HTTP_403_FORBIDDEN,
    'NotFound': status.HTTP_404_NOT_FOUND,
    'InsufficientStock': status.HTTP_409_CONFLICT,
    'DuplicateInvoiceNumber': status.HTTP_409_CONFLICT,
    'PersistenceError': status.HTTP_503_SERVICE_UNAVAILABLE,
}

@app.exception_handler(BMSError)
async def bms_error_handler(request: Request, exc: BMSError):
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.kind}: {exc.message}")

    if request.method in ("POST", "PATCH") and exc.kind in ("ValidationError", "NotFound", "InsufficientStock"):
        record_rejection(exc.kind)

    headers: Any = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bms_main_api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
