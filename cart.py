"""Client-side cart.

Held by the checkout screen for the lifetime of a session and passed
explicitly to whatever needs it; nothing here touches the network.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, List

from money import to_decimal


@dataclass(frozen=True)
class CartItem:
    product_id: str
    name: str
    price: Decimal
    image: str = ""
    subject_name: str = ""
    subject_code: str = ""

    @classmethod
    def from_product(cls, product: dict) -> "CartItem":
        """Build an item from the API's camelCase product representation."""
        return cls(
            product_id=product["id"],
            name=product["name"],
            price=to_decimal(product["price"]),
            image=product.get("image", ""),
            subject_name=product.get("subjectName", ""),
            subject_code=product.get("subjectCode", ""),
        )


class Cart:
    def __init__(self) -> None:
        self._items: List[CartItem] = []

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CartItem]:
        return iter(list(self._items))

    def __contains__(self, product_id: str) -> bool:
        return any(i.product_id == product_id for i in self._items)

    def add(self, item: CartItem) -> bool:
        """Append `item`; a product already in the cart is not added twice."""
        if item.product_id in self:
            return False
        self._items.append(item)
        return True

    def remove(self, product_id: str) -> None:
        for index, item in enumerate(self._items):
            if item.product_id == product_id:
                del self._items[index]
                return

    def clear(self) -> None:
        self._items.clear()

    def product_ids(self) -> List[str]:
        return [i.product_id for i in self._items]

    def total(self) -> Decimal:
        """Sum of item prices, quantized to cents; recomputed on every call."""
        return to_decimal(sum((i.price for i in self._items), Decimal("0")))
