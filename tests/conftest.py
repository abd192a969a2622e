"""Shared pytest fixtures: mongomock database, fake payment gateway, API client."""

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from main import app
from payments import PaymentIntentInfo, PaymentProviderError, get_payment_gateway
from schemas import Product, User
from security import create_access_token, hash_password


class FakeGateway:
    """In-memory stand-in for StripeGateway."""

    publishable_key = "pk_test_fake"

    def __init__(self):
        self.customers = []
        self.intents = {}
        self.fail = False

    def _check(self, message="Payment initiation failed"):
        if self.fail:
            raise PaymentProviderError(message)

    def create_customer(self, user_id, email, name):
        self._check()
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append(customer_id)
        return customer_id

    def create_ephemeral_key(self, customer_id):
        self._check()
        return f"ek_{customer_id}"

    def create_payment_intent(self, amount, currency, customer_id, metadata=None):
        self._check()
        intent_id = f"pi_{len(self.intents) + 1}"
        intent = PaymentIntentInfo(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            customer=customer_id,
            client_secret=f"{intent_id}_secret_x",
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        self._check("Payment verification failed")
        if intent_id not in self.intents:
            raise PaymentProviderError("Payment verification failed")
        return self.intents[intent_id]

    def confirm(self, intent_id, status="succeeded"):
        """What the provider does once the customer completes the payment sheet."""
        self.intents[intent_id].status = status


@pytest.fixture
def db():
    """Fresh in-memory MongoDB with production indexes."""
    database = mongomock.MongoClient().storefront
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    """TestClient wired to the mongomock database and fake gateway."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_user(db, name, email, is_admin=False):
    user_id = create_document(db, "user", User(
        name=name,
        email=email,
        password_hash=hash_password("secret123"),
        is_admin=is_admin,
    ))
    return db["user"].find_one({"_id": ObjectId(user_id)})


@pytest.fixture
def user(db):
    return _make_user(db, "Jane Student", "jane@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "Sam Other", "sam@example.com")


@pytest.fixture
def admin(db):
    return _make_user(db, "Admin", "admin@example.com", is_admin=True)


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']))}"}


@pytest.fixture
def user_headers(user):
    return auth(user)


@pytest.fixture
def other_headers(other_user):
    return auth(other_user)


@pytest.fixture
def admin_headers(admin):
    return auth(admin)


def _make_product(db, name, price, subject_code="MATH101", type="exam"):
    return create_document(db, "product", Product(
        name=name,
        subject_name="Calculus I",
        subject_code=subject_code,
        price=price,
        image="https://cdn.example.com/img/calc.png",
        description=f"{name} description",
        type=type,
        pdf_link="https://cdn.example.com/docs/calc.pdf",
    ))


@pytest.fixture
def exam_id(db):
    """Product priced 19.99."""
    return _make_product(db, "Calculus Final", 19.99)


@pytest.fixture
def notes_id(db):
    """Product priced 10.00."""
    return _make_product(db, "Calculus Notes", 10.00, type="notes")


@pytest.fixture
def product_id(exam_id):
    return exam_id
