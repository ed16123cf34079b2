"""
Business Management Service (BMS) - HTTP API Tests

Exercises the FastAPI application against a fresh in-memory state per test.
"""

import pytest
from decimal import Decimal

from fastapi.testclient import TestClient

from bms_auth_v1 import Principal, Role
from bms_main_api import AppState, app, get_state
from bms_persistence_v1 import Product

# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def state():
    fresh = AppState()
    app.dependency_overrides[get_state] = lambda: fresh
    yield fresh
    app.dependency_overrides.clear()

@pytest.fixture
def client(state):
    with TestClient(app) as test_client:
        yield test_client

def auth(state: AppState, user_id: str, role: Role, business_id: str = None) -> dict:
    token = state.auth_gateway.issue_token(Principal(user_id=user_id, role=role, business_id=business_id))
    return {"Authorization": f"Bearer {token}"}

def add_product(state: AppState, name: str, price, quantity: int, business_id: str = "BIZ-1") -> Product:
    return state.gateway.insert_product(
        Product(name=name, price=Decimal(str(price)), business_id=business_id, quantity=quantity)
    )

# ============================================
# HEALTH & OBSERVABILITY
# ============================================

class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health_reports_counts(self, client, state):
        add_product(state, "Widget", 10, 5)

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["total_products"] == 1
        assert body["total_invoices"] == 0
        assert body["ledger_integrity"] == True
        assert "res_003_stock_non_negative" in body["invariants"]
        assert "inv_201_line_items_sum" in body["invariants"]

    def test_metrics_exposed(self, client, state):
        product = add_product(state, "Widget", 10, 5)
        client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 1}]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "bms_invoices_created_total" in response.text
        assert "bms_invariant_checks_total" in response.text

    def test_violations_labelled_by_invariant_type(self, client, state):
        client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": []},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        text = client.get("/metrics").text

        assert 'invariant_id="inv_101_non_empty_purchase"' in text
        assert 'invariant_type="state"' in text

# ============================================
# INVOICES
# ============================================

class TestCreateInvoice:

    def test_purchase_creates_invoice(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 2}]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 201
        body = response.json()
        assert body["customer_id"] == "CUST-1"
        assert body["total_amount"] == "20.00"
        assert body["line_items"] == [
            {"product_id": product.id, "quantity": 2, "price_per_unit": "10.00", "line_total": "20.00"}
        ]
        assert body["invoice_number"].startswith("INV-")
        assert state.gateway.find_product_by_id(product.id).quantity == 3

    def test_out_of_stock_line_reported(self, client, state):
        a = add_product(state, "A", 10, 5)
        b = add_product(state, "B", 7, 0)

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [
                {"product_id": a.id, "quantity": 2},
                {"product_id": b.id, "quantity": 3}
            ]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "InsufficientStock"
        assert body["product_id"] == b.id
        assert body["line_index"] == 1
        assert state.gateway.find_product_by_id(a.id).quantity == 3
        assert state.gateway.list_invoices() == []

    def test_unknown_product(self, client, state):
        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": "missing", "quantity": 1}]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"
        assert response.json()["line_index"] == 0

    @pytest.mark.parametrize("items", [
        [],
        [{"product_id": "P", "quantity": 0}],
        [{"product_id": "P", "quantity": -2}],
    ])
    def test_invalid_items(self, client, state, items):
        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": items},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_duplicate_invoice_number(self, client, state):
        product = add_product(state, "Widget", 10, 5)
        headers = auth(state, "CUST-1", Role.CUSTOMER)
        payload = {
            "business_id": "BIZ-1",
            "items": [{"product_id": product.id, "quantity": 1}],
            "invoice_number": "INV-7"
        }

        assert client.post("/api/v1/invoices", json=payload, headers=headers).status_code == 201
        response = client.post("/api/v1/invoices", json=payload, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateInvoiceNumber"
        assert len(state.gateway.list_invoices()) == 1

    def test_requires_token(self, client, state):
        response = client.post("/api/v1/invoices", json={"business_id": "BIZ-1", "items": []})

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_tampered_token(self, client, state):
        token = state.auth_gateway.issue_token(Principal("CUST-1", Role.CUSTOMER))
        payload, _, signature = token.rpartition(".")
        forged = payload.replace("customer", "admin") + "." + signature

        response = client.get("/api/v1/invoices", headers={"Authorization": f"Bearer {forged}"})

        assert response.status_code == 401

    def test_only_customers_purchase(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 1}]},
            headers=auth(state, "EMP-1", Role.EMPLOYEE, "BIZ-1")
        )

        assert response.status_code == 403
        assert state.gateway.find_product_by_id(product.id).quantity == 5

class TestReadInvoices:

    def _purchase(self, client, state, customer_id):
        product = add_product(state, "Widget", 10, 5)
        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 1}]},
            headers=auth(state, customer_id, Role.CUSTOMER)
        )
        return response.json()

    def test_customer_reads_own_invoice_twice(self, client, state):
        invoice = self._purchase(client, state, "CUST-1")
        headers = auth(state, "CUST-1", Role.CUSTOMER)

        first = client.get(f"/api/v1/invoices/{invoice['id']}", headers=headers)
        second = client.get(f"/api/v1/invoices/{invoice['id']}", headers=headers)

        assert first.status_code == 200
        assert first.content == second.content

    def test_customer_cannot_read_others_invoice(self, client, state):
        invoice = self._purchase(client, state, "CUST-1")

        response = client.get(f"/api/v1/invoices/{invoice['id']}", headers=auth(state, "CUST-2", Role.CUSTOMER))

        assert response.status_code == 403

    def test_manager_reads_any_invoice(self, client, state):
        invoice = self._purchase(client, state, "CUST-1")

        response = client.get(f"/api/v1/invoices/{invoice['id']}", headers=auth(state, "MGR-1", Role.MANAGER, "BIZ-1"))

        assert response.status_code == 200

    def test_unknown_invoice(self, client, state):
        response = client.get("/api/v1/invoices/nope", headers=auth(state, "ADM-1", Role.ADMIN))

        assert response.status_code == 404

    def test_list_invoices_admin_only(self, client, state):
        self._purchase(client, state, "CUST-1")
        self._purchase(client, state, "CUST-2")

        listed = client.get("/api/v1/invoices", headers=auth(state, "ADM-1", Role.ADMIN))
        filtered = client.get("/api/v1/invoices?customer_id=CUST-2", headers=auth(state, "ADM-1", Role.ADMIN))
        denied = client.get("/api/v1/invoices", headers=auth(state, "CUST-1", Role.CUSTOMER))

        assert len(listed.json()) == 2
        assert [inv["customer_id"] for inv in filtered.json()] == ["CUST-2"]
        assert denied.status_code == 403

# ============================================
# PRODUCTS
# ============================================

class TestProducts:

    def test_manager_creates_product_for_own_business(self, client, state):
        response = client.post(
            "/api/v1/products",
            json={"name": "Widget", "price": "10.5", "quantity": 3},
            headers=auth(state, "MGR-1", Role.MANAGER, "BIZ-9")
        )

        assert response.status_code == 201
        body = response.json()
        assert body["business_id"] == "BIZ-9"
        assert body["price"] == "10.50"
        assert client.get(f"/api/v1/products/{body['id']}").json()["quantity"] == 3

    def test_create_product_needs_business(self, client, state):
        response = client.post(
            "/api/v1/products",
            json={"name": "Widget", "price": "1"},
            headers=auth(state, "ADM-1", Role.ADMIN)
        )

        assert response.status_code == 400

    def test_negative_price_rejected_by_schema(self, client, state):
        response = client.post(
            "/api/v1/products",
            json={"name": "Widget", "price": "-1", "business_id": "BIZ-1"},
            headers=auth(state, "ADM-1", Role.ADMIN)
        )

        assert response.status_code == 422

    def test_customer_cannot_create_product(self, client, state):
        response = client.post(
            "/api/v1/products",
            json={"name": "Widget", "price": "1", "business_id": "BIZ-1"},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 403

    def test_update_product(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.put(
            f"/api/v1/products/{product.id}",
            json={"price": "12.25", "quantity": 8},
            headers=auth(state, "ADM-1", Role.ADMIN)
        )

        assert response.status_code == 200
        assert response.json()["price"] == "12.25"
        assert response.json()["quantity"] == 8

    def test_update_unknown_product(self, client, state):
        response = client.put(
            "/api/v1/products/missing",
            json={"name": "Other"},
            headers=auth(state, "ADM-1", Role.ADMIN)
        )

        assert response.status_code == 404

    def test_list_products_by_business(self, client, state):
        add_product(state, "A", 1, 1, business_id="BIZ-1")
        add_product(state, "B", 1, 1, business_id="BIZ-2")

        assert len(client.get("/api/v1/products").json()) == 2
        assert [p["name"] for p in client.get("/api/v1/products?business_id=BIZ-2").json()] == ["B"]

class TestDirectPurchase:
    """PATCH /products/{id}/quantity goes through the same stock ledger."""

    def test_decrement(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.patch(
            f"/api/v1/products/{product.id}/quantity",
            json={"decrement_by": 2},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Product purchased", "remaining": 3}

    def test_insufficient_stock(self, client, state):
        product = add_product(state, "Widget", 10, 1)

        response = client.patch(
            f"/api/v1/products/{product.id}/quantity",
            json={"decrement_by": 2},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 409
        assert response.json()["details"] == {"requested": 2, "available": 1}
        assert state.gateway.find_product_by_id(product.id).quantity == 1

    def test_zero_rejected(self, client, state):
        product = add_product(state, "Widget", 10, 1)

        response = client.patch(
            f"/api/v1/products/{product.id}/quantity",
            json={"decrement_by": 0},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 400

class TestDeleteProduct:

    def test_manager_deletes_product(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.delete(f"/api/v1/products/{product.id}", headers=auth(state, "MGR-1", Role.MANAGER, "BIZ-1"))

        assert response.status_code == 200
        assert response.json() == {"message": "Product deleted"}
        assert client.get(f"/api/v1/products/{product.id}").status_code == 404

    def test_delete_unknown_product(self, client, state):
        response = client.delete("/api/v1/products/missing", headers=auth(state, "ADM-1", Role.ADMIN))

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_customer_cannot_delete(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.delete(f"/api/v1/products/{product.id}", headers=auth(state, "CUST-1", Role.CUSTOMER))

        assert response.status_code == 403
        assert state.gateway.find_product_by_id(product.id) is not None

    def test_purchase_after_delete(self, client, state):
        product = add_product(state, "Widget", 10, 5)
        client.delete(f"/api/v1/products/{product.id}", headers=auth(state, "ADM-1", Role.ADMIN))

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 1}]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 404
        assert response.json()["product_id"] == product.id

# ============================================
# ROBUSTNESS
# ============================================

class TestRejectedInput:

    @pytest.mark.parametrize("price", ["1e27", "10.005", "123456789012345"])
    def test_out_of_range_price_rejected_by_schema(self, client, state, price):
        response = client.post(
            "/api/v1/products",
            json={"name": "Widget", "price": price, "business_id": "BIZ-1"},
            headers=auth(state, "ADM-1", Role.ADMIN)
        )

        assert response.status_code == 422
        assert state.gateway.list_products() == []

    def test_unrepresentable_invoice_total(self, client, state):
        product = add_product(state, "Bulk", "1e20", 10**9)

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 10**9}]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["product_id"] == product.id
        assert body["line_index"] == 0
        assert len(body["details"]["applied_reservations"]) == 1

    def test_malformed_line_identified(self, client, state):
        product = add_product(state, "Widget", 10, 5)

        response = client.post(
            "/api/v1/invoices",
            json={"business_id": "BIZ-1", "items": [
                {"product_id": product.id, "quantity": 1},
                {"product_id": product.id, "quantity": 0}
            ]},
            headers=auth(state, "CUST-1", Role.CUSTOMER)
        )

        assert response.status_code == 400
        assert response.json()["line_index"] == 1

    def test_client_errors_keep_service_healthy(self, client, state):
        product = add_product(state, "Widget", 10, 5)
        headers = auth(state, "CUST-1", Role.CUSTOMER)

        for _ in range(3):
            response = client.post(
                "/api/v1/invoices",
                json={"business_id": "BIZ-1", "items": [{"product_id": product.id, "quantity": 0}]},
                headers=headers
            )
            assert response.status_code == 400

        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["health_score"] == 1.0
