"""
Storefront — models/cart.py
─────────────────────────────────────────────────────────────────
Shopping cart dataclasses. One cart per user, lines keyed by
product_id.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List


@dataclass
class CartLine:
    product_id: str
    color_id:   str
    quantity:   int

    @classmethod
    def from_row(cls, row) -> "CartLine":
        return cls(
            product_id=row["product_id"],
            color_id=row["color_id"],
            quantity=int(row["quantity"]),
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "color_id":   self.color_id,
            "quantity":   self.quantity,
        }


@dataclass
class Cart:
    id:         str
    user_id_fk: str
    created_at: datetime
    updated_at: datetime
    cart:       List[CartLine] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id":         self.id,
            "user_id_fk": self.user_id_fk,
            "cart":       [item.to_dict() for item in self.cart],
            "createdAt":  self.created_at.isoformat(),
            "updatedAt":  self.updated_at.isoformat(),
        }
