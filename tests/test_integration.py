#!/usr/bin/env python3
"""
Integration Tests for the Settlement Service
Drives the REST API end to end: seller verification, listing, purchase,
asynchronous payment confirmation, admin settlement and error mapping.
"""

import time
import unittest
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from auth_service.main import app as auth_app
from common.security import mint_user_jwt, verify_token
from common.settings import settings
from settlement_service.confirmation import SimulatedPaymentGateway
from settlement_service.db import SessionLocal
from settlement_service.main import app

from support import ADDRESS, DOCUMENTS, StoreMixin


def auth(caller):
    return {"Authorization": f"Bearer {mint_user_jwt(sub=caller.user_id)}"}


class ServiceTestCase(StoreMixin, unittest.TestCase):
    gateway_delay = 0.01

    def setUp(self):
        super().setUp()
        self.kafka = patch.object(settings, "kafka_enabled", False)
        self.kafka.start()
        app.state.session_factory = self.Session
        app.state.payment_gateway = SimulatedPaymentGateway(delay_seconds=self.gateway_delay)
        self.client = TestClient(app)
        self.client.__enter__()

        self.admin = self.make_user("ada", role="admin")
        self.seller = self.make_user("sam", role="seller")
        self.buyer = self.make_user("bea")

    def tearDown(self):
        self.client.__exit__(None, None, None)
        app.state.session_factory = SessionLocal
        del app.state.payment_gateway
        self.kafka.stop()
        super().tearDown()

    def listed_product(self, price="200.00"):
        resp = self.client.post("/products", json={"title": "MacBook Air M1", "price": price}, headers=auth(self.seller))
        self.assertEqual(resp.status_code, 201, resp.text)
        product_id = resp.json()["product"]["id"]
        resp = self.client.put(f"/products/{product_id}/review", json={"decision": "approved"}, headers=auth(self.admin))
        self.assertEqual(resp.status_code, 200, resp.text)
        return product_id

    def create_order(self, product_id, caller=None):
        return self.client.post(
            "/orders",
            json={"product_id": product_id, "shipping_address": ADDRESS, "payment_method": "gcash"},
            headers=auth(caller or self.buyer),
        )

    def wait_for_status(self, order_id, status, timeout=3.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            order = self.client.get(f"/orders/{order_id}", headers=auth(self.buyer)).json()["order"]
            if order["status"] == status:
                return order
            time.sleep(0.02)
        self.fail(f"order {order_id} never reached {status}")

    def assertError(self, resp, status_code, code):
        self.assertEqual(resp.status_code, status_code, resp.text)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], code)


class TestMarketplaceFlow(ServiceTestCase):

    def test_verification_listing_purchase_and_settlement(self):
        applicant = self.make_user("nia")

        # 1. plain users cannot list
        resp = self.client.post("/products", json={"title": "iPad", "price": "150.00"}, headers=auth(applicant))
        self.assertError(resp, 403, "FORBIDDEN")

        # 2. verification makes them a seller; same token, fresh role
        resp = self.client.post("/verifications", json=DOCUMENTS, headers=auth(applicant))
        self.assertEqual(resp.status_code, 201, resp.text)
        verification_id = resp.json()["verification_id"]
        self.assertTrue(resp.json()["code"].startswith("VER-"))

        resp = self.client.put(
            f"/verifications/{verification_id}/status", json={"status": "approved"}, headers=auth(self.admin),
        )
        self.assertEqual(resp.json()["verification"]["status"], "approved")
        self.assertEqual(
            self.client.get("/verifications/mine", headers=auth(applicant)).json()["verification"]["status"], "approved",
        )

        resp = self.client.post("/products", json={"title": "iPad", "price": "1000.00"}, headers=auth(applicant))
        self.assertEqual(resp.status_code, 201, resp.text)
        product_id = resp.json()["product"]["id"]
        self.client.put(f"/products/{product_id}/review", json={"decision": "approved"}, headers=auth(self.admin))

        # 3. purchase
        resp = self.create_order(product_id)
        self.assertEqual(resp.status_code, 201, resp.text)
        order = resp.json()["order"]
        self.assertEqual(order["status"], "pending_payment")
        self.assertEqual(order["seller_id"], applicant.user_id)
        self.assertEqual(Decimal(str(order["fee_amount"])), Decimal("50.00"))
        self.assertEqual(Decimal(str(order["net_amount"])), Decimal("950.00"))

        # 4. payment resolves asynchronously
        resp = self.client.post(
            f"/orders/{order['id']}/payment",
            json={"payment_method": "gcash", "payment_reference": "GC-778899"},
            headers=auth(self.buyer),
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["payment"]["status"], "processing")
        settled = self.wait_for_status(order["id"], "admin_verification")
        self.assertEqual(settled["payment_reference"], "GC-778899")

        pending = self.client.get("/orders/admin/pending-verification", headers=auth(self.admin)).json()["orders"]
        self.assertEqual([o["id"] for o in pending], [order["id"]])

        # 5. admin settles
        resp = self.client.put(
            f"/orders/{order['id']}/verify", json={"tracking_number": "JNT-1234"}, headers=auth(self.admin),
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["order"]["status"], "completed")
        self.assertEqual(self.client.get(f"/products/{product_id}").json()["product"]["status"], "sold")

        earnings = self.client.get("/earnings", headers=auth(self.admin)).json()
        self.assertEqual(len(earnings["earnings"]), 1)
        self.assertEqual(Decimal(str(earnings["total"])), Decimal("50.00"))

        detail = self.client.get(f"/orders/{order['id']}", headers=auth(applicant)).json()
        self.assertEqual([p["status"] for p in detail["payments"]], ["completed"])

    def test_cancel_and_order_listing(self):
        product_id = self.listed_product()
        order_id = self.create_order(product_id).json()["order"]["id"]

        resp = self.client.put(f"/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=auth(self.buyer))
        self.assertEqual(resp.json()["order"]["status"], "cancelled")
        self.assertEqual(resp.json()["order"]["cancel_reason"], "Changed my mind")

        mine = self.client.get("/orders/mine", params={"type": "seller"}, headers=auth(self.seller)).json()["orders"]
        self.assertEqual([o["id"] for o in mine], [order_id])

        resp = self.client.put(f"/orders/{order_id}/cancel", json={}, headers=auth(self.buyer))
        self.assertError(resp, 409, "INVALID_STATE")

    def test_cart_checkout_and_listing_management(self):
        phone, case = self.listed_product(), self.listed_product(price="15.00")

        self.client.post("/cart/add", json={"product_id": phone}, headers=auth(self.buyer))
        self.client.post("/cart/add", json={"product_id": case, "quantity": 2}, headers=auth(self.buyer))
        self.assertEqual(self.client.get("/cart/count", headers=auth(self.buyer)).json()["count"], 2)
        resp = self.client.post("/cart/checkout", json={"shipping_address": ADDRESS, "payment_method": "gcash"}, headers=auth(self.buyer))
        self.assertError(resp, 400, "VALIDATION_ERROR")

        resp = self.client.put("/cart/update", json={"product_id": case, "quantity": 1}, headers=auth(self.buyer))
        self.assertEqual(resp.json()["item"]["quantity"], 1)
        view = self.client.get("/cart", headers=auth(self.buyer)).json()
        self.assertEqual(Decimal(str(view["total"])), Decimal("215.00"))

        resp = self.client.post("/cart/checkout", json={"shipping_address": ADDRESS, "payment_method": "gcash"}, headers=auth(self.buyer))
        self.assertEqual(resp.status_code, 201, resp.text)
        self.assertEqual({o["product_id"] for o in resp.json()["orders"]}, {phone, case})
        self.assertEqual(self.client.get("/cart/count", headers=auth(self.buyer)).json()["count"], 0)

        # listings with orders stay; the seller can still edit them
        self.assertError(self.client.delete(f"/products/{phone}", headers=auth(self.seller)), 409, "INVALID_STATE")
        resp = self.client.put(f"/products/{phone}", json={"description": "Boxed"}, headers=auth(self.seller))
        self.assertEqual(resp.json()["product"]["description"], "Boxed")
        mine = self.client.get(f"/products/seller/{self.seller.user_id}", headers=auth(self.seller)).json()["products"]
        self.assertEqual({p["id"] for p in mine}, {phone, case})

        report = self.client.get("/admin/stats", headers=auth(self.admin)).json()
        self.assertEqual(report["orders_by_status"], {"pending_payment": 2})
        self.assertError(self.client.get("/admin/stats", headers=auth(self.buyer)), 403, "FORBIDDEN")

    def test_only_approved_products_are_listed(self):
        product_id = self.listed_product()
        self.client.post("/products", json={"title": "Unreviewed", "price": "10.00"}, headers=auth(self.seller))

        products = self.client.get("/products").json()["products"]
        self.assertEqual([p["id"] for p in products], [product_id])


class TestErrorResponses(ServiceTestCase):

    def test_missing_and_invalid_tokens(self):
        self.assertError(self.client.get("/orders/mine"), 401, "UNAUTHORIZED")
        resp = self.client.get("/orders/mine", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertError(resp, 401, "UNAUTHORIZED")

    def test_buying_own_product(self):
        product_id = self.listed_product()
        self.assertError(self.create_order(product_id, caller=self.seller), 400, "INVALID_OPERATION")

    def test_unknown_resources(self):
        self.assertError(self.create_order("no-such-product"), 404, "NOT_FOUND")
        self.assertError(self.client.get("/orders/no-such-order", headers=auth(self.buyer)), 404, "NOT_FOUND")

    def test_request_validation(self):
        product_id = self.listed_product()
        resp = self.client.post(
            "/orders",
            json={"product_id": product_id, "shipping_address": ADDRESS, "payment_method": "cheque"},
            headers=auth(self.buyer),
        )
        self.assertError(resp, 400, "VALIDATION_ERROR")
        self.assertIn("payment_method", resp.json()["error"]["field"])

    def test_admin_only_and_state_checks(self):
        order_id = self.create_order(self.listed_product()).json()["order"]["id"]

        self.assertError(self.client.put(f"/orders/{order_id}/verify", json={}, headers=auth(self.buyer)), 403, "FORBIDDEN")
        self.assertError(self.client.put(f"/orders/{order_id}/verify", json={}, headers=auth(self.admin)), 409, "INVALID_STATE")
        self.assertError(self.client.get("/earnings", headers=auth(self.seller)), 403, "FORBIDDEN")

    def test_duplicate_pending_verification(self):
        applicant = self.make_user("nia")
        self.client.post("/verifications", json=DOCUMENTS, headers=auth(applicant))
        resp = self.client.post("/verifications", json=DOCUMENTS, headers=auth(applicant))
        self.assertError(resp, 409, "CONFLICT")

    def test_errors_carry_trace_ids(self):
        resp = self.client.get("/orders/no-such-order", headers={**auth(self.buyer), "X-Trace-ID": "trace-abc"})
        self.assertEqual(resp.headers["X-Trace-ID"], "trace-abc")
        self.assertEqual(resp.json()["trace_id"], "trace-abc")


class TestPaymentInFlight(ServiceTestCase):
    gateway_delay = 10

    def test_second_payment_conflicts_while_first_is_processing(self):
        order_id = self.create_order(self.listed_product()).json()["order"]["id"]
        body = {"payment_method": "gcash"}

        first = self.client.post(f"/orders/{order_id}/payment", json=body, headers=auth(self.buyer))
        self.assertEqual(first.status_code, 200, first.text)
        second = self.client.post(f"/orders/{order_id}/payment", json=body, headers=auth(self.buyer))
        self.assertError(second, 409, "CONFLICT")

        self.assertError(
            self.client.post(f"/orders/{order_id}/payment", json=body, headers=auth(self.seller)), 403, "FORBIDDEN",
        )


class TestAuthService(StoreMixin, unittest.TestCase):

    def setUp(self):
        super().setUp()
        auth_app.state.session_factory = self.Session
        self.client = TestClient(auth_app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        auth_app.state.session_factory = SessionLocal
        super().tearDown()

    def test_register_login_introspect(self):
        resp = self.client.post("/register", json={"username": "bea", "email": "bea@marketplace.io"})
        self.assertEqual(resp.status_code, 201, resp.text)
        self.assertEqual(resp.json()["role"], "user")
        self.assertIn("X-Trace-ID", resp.headers)
        user_id = resp.json()["user_id"]

        token = self.client.post("/login", json={"username": "bea"}).json()["access_token"]
        self.assertEqual(verify_token(token)["sub"], user_id)
        self.assertEqual(self.client.get("/introspect", params={"token": token}).json()["sub"], user_id)

    def test_duplicate_registration_and_unknown_login(self):
        self.client.post("/register", json={"username": "bea", "email": "bea@marketplace.io"})
        resp = self.client.post("/register", json={"username": "bea", "email": "other@marketplace.io"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(self.client.post("/login", json={"username": "nobody"}).status_code, 401)


if __name__ == "__main__":
    unittest.main(verbosity=2)
