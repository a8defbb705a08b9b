"""
Shared fixtures: a throwaway SQLite database per test and factories for the
users, listings and orders the settlement tests start from.
"""

import json
import os
import tempfile
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from common.security import Caller
from settlement_service import orders, payments
from settlement_service.db import make_engine
from settlement_service.models import Base, Outbox, Product, User

ADDRESS = {"line1": "12 Rizal Ave", "city": "Manila", "postal_code": "1000"}

DOCUMENTS = {
    "full_name": "Sam Seller",
    "address": "12 Rizal Ave, Manila",
    "phone_number": "+63 912 345 6789",
    "id_type": "Passport",
    "id_number": "P1234567",
    "id_image": "data:image/png;base64,aWQ=",
    "selfie_image": "data:image/png;base64,c2VsZmll",
}

def store_failure():
    return OperationalError("INSERT INTO outbox", {}, Exception("disk I/O error"))

class StoreMixin:
    """Per-test SQLite file so separate sessions really are separate connections"""

    def setUp(self):
        super().setUp()
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine = make_engine(f"sqlite:///{self.db_path}")
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        os.remove(self.db_path)
        super().tearDown()

    def make_user(self, username: str, role: str = "user") -> Caller:
        with self.Session() as s:
            user = User(username=username, email=f"{username}@example.com", role=role)
            s.add(user)
            s.commit()
            return Caller(user_id=user.id, role=user.role)

    def make_product(self, seller: Caller, price: str = "200.00", status: str = "approved", is_premium: bool = False) -> Product:
        with self.Session() as s:
            product = Product(
                seller_id=seller.user_id, title="iPhone 13 128GB", description="Lightly used",
                price=Decimal(price), status=status, is_premium=is_premium,
            )
            s.add(product)
            s.commit()
            return product

    def reload(self, model, id_):
        with self.Session() as s:
            return s.get(model, id_)

    def events(self, topic: str):
        with self.Session() as s:
            rows = s.scalars(select(Outbox).where(Outbox.topic == topic).order_by(Outbox.id))
            return [json.loads(row.payload) for row in rows]

    # ── order fixtures ───────────────────────────

    def place_order(self, buyer: Caller, product: Product):
        return orders.create_order(self.db, buyer, product.id, ADDRESS, "gcash")

    def paid_order(self, buyer: Caller, product: Product):
        """Order confirmed by the gateway and waiting for an admin."""
        order = self.place_order(buyer, product)
        payment = payments.initiate_payment(self.db, buyer, order.id, "gcash", reference="GC-0001")
        payments.apply_payment_confirmation(self.db, payment.id, succeeded=True)
        return self.reload(type(order), order.id), payment
