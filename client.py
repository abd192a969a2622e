"""HTTP client for the storefront API.

Used by the mobile-side checkout flow. Non-2xx responses raise ApiError with
the server's `detail` message; transport failures raise ApiUnavailable.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """The API answered with an error status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}")


class ApiUnavailable(Exception):
    """The API could not be reached."""

    pass


@dataclass
class PaymentSheetParams:
    """What the provider-hosted payment sheet needs to collect a payment."""

    payment_intent: str
    payment_intent_id: str
    ephemeral_key: str
    customer: str
    publishable_key: str
    amount: int
    currency: str


def _handle_response(response: httpx.Response) -> Any:
    if response.is_success:
        return response.json()
    try:
        detail = response.json().get("detail", response.reason_phrase)
    except ValueError:
        detail = response.reason_phrase
    if not isinstance(detail, str):
        # request validation errors come back as a list
        detail = str(detail)
    raise ApiError(response.status_code, detail)


class StorefrontClient:
    def __init__(self, http: Optional[httpx.Client] = None, base_url: str = "http://localhost:8000",
                 timeout: float = 10.0):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.token: Optional[str] = None

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self.http.request(method, path, headers=self._headers(), **kwargs)
        except httpx.RequestError as e:
            logger.error("Storefront API unavailable: %s", e)
            raise ApiUnavailable(str(e)) from e
        return _handle_response(response)

    def login(self, email: str, password: str) -> dict:
        data = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = data["access_token"]
        return data["user"]

    def list_products(self, product_type: Optional[str] = None) -> List[dict]:
        params = {"type": product_type} if product_type else None
        return self._request("GET", "/api/products", params=params)

    def get_product(self, product_id: str) -> dict:
        return self._request("GET", f"/api/products/{product_id}")

    def create_payment_intent(self, product_ids: Sequence[str]) -> PaymentSheetParams:
        data = self._request(
            "POST",
            "/api/orders/create-payment-intent",
            json={"orderItems": [{"product": pid} for pid in product_ids]},
        )
        return PaymentSheetParams(
            payment_intent=data["paymentIntent"],
            payment_intent_id=data["paymentIntentId"],
            ephemeral_key=data["ephemeralKey"],
            customer=data["customer"],
            publishable_key=data["publishableKey"],
            amount=data["amount"],
            currency=data["currency"],
        )

    def create_order(
        self,
        product_ids: Sequence[str],
        total: Decimal,
        payment_intent_id: str,
        payment_method: str = "card",
    ) -> dict:
        return self._request(
            "POST",
            "/api/orders",
            json={
                "orderItems": [{"product": pid} for pid in product_ids],
                "totalPrice": str(total),
                "paymentMethod": payment_method,
                "paymentResult": {"id": payment_intent_id},
            },
        )

    def my_orders(self) -> List[dict]:
        return self._request("GET", "/api/orders/myorders")

    def add_review(self, product_id: str, rating: int, comment: str) -> dict:
        return self._request("POST", "/api/reviews", json={"product": product_id, "rating": rating, "comment": comment})
