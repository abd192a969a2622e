"""One checkout attempt, from cart to stored order.

    IDLE -> AWAITING_INTENT -> AWAITING_PAYMENT -> PAID | FAILED
                     |                  |
                     v                  v
                 CANCELLED        ORDER_PENDING -> PAID | FAILED

PAID, FAILED and CANCELLED are terminal. A failed or cancelled attempt leaves
the cart untouched and records nothing; the user starts a new Checkout to try
again.

ORDER_PENDING means the provider took the payment but the store could not be
reached (or answered with a server error) while recording the order. The
payment intent id is kept and submit_order() resends the same order; the
store treats the intent id as an idempotency key, so a resend never creates a
second order. The items and total are fixed when the attempt starts, so cart
edits made while the payment sheet is open do not change what is recorded.
"""

import logging
import threading
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional

from cart import Cart
from client import ApiError, ApiUnavailable, PaymentSheetParams, StorefrontClient

logger = logging.getLogger(__name__)


class CheckoutState(Enum):
    IDLE = "idle"
    AWAITING_INTENT = "awaiting_intent"
    AWAITING_PAYMENT = "awaiting_payment"
    ORDER_PENDING = "order_pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

class PaymentSheetError(Exception):
    """The provider payment sheet reported a decline or the user dismissed it."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


# Presents the provider-hosted payment UI; returns once the provider has
# confirmed the payment, raises PaymentSheetError otherwise.
PresentPayment = Callable[[PaymentSheetParams], None]


class Checkout:
    def __init__(
        self,
        cart: Cart,
        api: StorefrontClient,
        present_payment: PresentPayment,
        on_change: Optional[Callable[[CheckoutState], None]] = None,
    ):
        self.cart = cart
        self.api = api
        self.present_payment = present_payment
        self.on_change = on_change
        self.state = CheckoutState.IDLE
        self.error: Optional[str] = None
        self.order: Optional[dict] = None
        self.payment: Optional[PaymentSheetParams] = None
        self._cancelled = threading.Event()
        self.product_ids: List[str] = []
        self.total = Decimal("0.00")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Detach the attempt from its view.

        No further on_change calls are made. An attempt that has not reached
        payment confirmation stops at its next step in CANCELLED; a confirmed
        payment is still turned into an order.
        """
        self._cancelled.set()

    def _transition(self, state: CheckoutState) -> None:
        self.state = state
        if self.on_change is not None and not self.cancelled:
            self.on_change(state)

    def _fail(self, message: str) -> CheckoutState:
        self.error = message
        self._transition(CheckoutState.FAILED)
        logger.info("Checkout failed: %s", message)
        return self.state

    def run(self) -> CheckoutState:
        if self.state is not CheckoutState.IDLE:
            raise RuntimeError("Checkout already started")
        if not len(self.cart):
            return self._fail("Cart is empty")

        self.product_ids = self.cart.product_ids()
        self.total = self.cart.total()

        self._transition(CheckoutState.AWAITING_INTENT)
        try:
            self.payment = self.api.create_payment_intent(self.product_ids)
        except (ApiError, ApiUnavailable) as e:
            logger.warning("Payment intent request failed: %s", e)
            return self._fail("Payment initiation failed")
        if self.cancelled:
            self._transition(CheckoutState.CANCELLED)
            logger.info("Checkout cancelled before payment")
            return self.state

        self._transition(CheckoutState.AWAITING_PAYMENT)
        try:
            self.present_payment(self.payment)
        except PaymentSheetError as e:
            return self._fail(f"Payment failed: {e.message}")

        return self.submit_order()

    def submit_order(self) -> CheckoutState:
        """Record the confirmed payment as an order.

        Called by run() once the payment sheet returns, and again by the
        caller to retry an attempt left in ORDER_PENDING.
        """
        if self.state not in (CheckoutState.AWAITING_PAYMENT, CheckoutState.ORDER_PENDING):
            raise RuntimeError(f"No confirmed payment to record in state {self.state.value}")

        try:
            self.order = self.api.create_order(self.product_ids, self.total, self.payment.payment_intent_id)
        except ApiError as e:
            if e.status_code >= 500:
                return self._pending(e.message)
            return self._fail(e.message)
        except ApiUnavailable:
            return self._pending("Could not reach the store to record the order")

        for product_id in self.product_ids:
            self.cart.remove(product_id)
        self.error = None
        self._transition(CheckoutState.PAID)
        logger.info("Checkout paid, order %s", self.order.get("id"))
        return self.state

    def _pending(self, message: str) -> CheckoutState:
        self.error = message
        self._transition(CheckoutState.ORDER_PENDING)
        logger.warning("Order for payment %s not recorded: %s", self.payment.payment_intent_id, message)
        return self.state
