"""
Storefront — cart.py
─────────────────────────────────────────────────────────────────
One shopping cart per user. product_id is the merge key:

  add [{P1, qty 2}]  →  P1 × 2
  add [{P1, qty 3}]  →  P1 × 5        (incremented, not duplicated)
  add [{P2, qty 1}]  →  P1 × 5, P2 × 1 (appended)

Every merge runs inside BEGIN IMMEDIATE and increments in SQL
(ON CONFLICT … quantity = quantity + excluded.quantity), so two
concurrent adds for the same user both land.

ENDPOINTS:
  POST   /shopping_cart                          → merge lines into cart
  GET    /shopping_cart/{user_id_fk}             → cart + catalog entries
  PUT    /shopping_cart/{user_id_fk}             → replace cart lines
  DELETE /shopping_cart/{user_id_fk}/{product_id} → drop one line
─────────────────────────────────────────────────────────────────
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from storefront.catalog import ProductCatalog
from storefront.core.database import get_db, write_transaction
from storefront.core.errors import NotFound, ValidationError
from storefront.models.cart import Cart, CartLine

logger = logging.getLogger("storefront.cart")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_lines(lines: List[CartLine], allow_empty: bool = False) -> List[CartLine]:
    if not lines and not allow_empty:
        raise ValidationError("Cart must contain at least one line")
    for line in lines:
        if not isinstance(line.product_id, str) or not line.product_id.strip():
            raise ValidationError("product_id is required")
        if not isinstance(line.color_id, str) or not line.color_id.strip():
            raise ValidationError("color_id is required")
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity < 1:
            raise ValidationError(f"Invalid quantity for {line.product_id}: {line.quantity!r}")
    return lines


def consolidate(lines: List[CartLine]) -> List[CartLine]:
    """Sum duplicates by product_id, first occurrence wins color and order."""
    merged = {}
    for line in lines:
        if line.product_id in merged:
            merged[line.product_id].quantity += line.quantity
        else:
            merged[line.product_id] = CartLine(line.product_id, line.color_id, line.quantity)
    return list(merged.values())


class CartService:

    def __init__(self, db_path: str, catalog: ProductCatalog,
                 timeout: float = 5.0, clock: Callable[[], datetime] = _utcnow):
        self.db_path = db_path
        self.catalog = catalog
        self.timeout = timeout
        self._clock = clock

    # ─── Internal ─────────────────────────────

    async def _load(self, db, user_id: str) -> Optional[Cart]:
        async with db.execute(
            "SELECT * FROM shopping_carts WHERE user_id_fk = ?", (user_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        async with db.execute(
            "SELECT * FROM cart_lines WHERE user_id_fk = ? ORDER BY position", (user_id,)
        ) as cur:
            lines = [CartLine.from_row(r) for r in await cur.fetchall()]
        return Cart(
            id=row["id"],
            user_id_fk=row["user_id_fk"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            cart=lines,
        )

    async def _next_position(self, db, user_id: str) -> int:
        async with db.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 AS p FROM cart_lines WHERE user_id_fk = ?",
            (user_id,),
        ) as cur:
            return (await cur.fetchone())["p"]

    # ─── Operations ───────────────────────────

    async def add_to_cart(self, user_id: str, lines: List[CartLine]) -> Cart:
        """
        Merge lines into the user's cart, creating it on first use.
        Existing product_id → quantity added. New product_id → appended.
        """
        if not (user_id or "").strip():
            raise ValidationError("user_id_fk is required")
        lines = consolidate(_validate_lines(lines))
        ts = self._clock().isoformat()

        async with write_transaction(self.db_path, self.timeout) as db:
            async with db.execute(
                "SELECT 1 FROM shopping_carts WHERE user_id_fk = ?", (user_id,)
            ) as cur:
                created = await cur.fetchone() is None
            await db.execute(
                """INSERT INTO shopping_carts (id, user_id_fk, created_at, updated_at)
                   VALUES (?,?,?,?)
                   ON CONFLICT(user_id_fk) DO UPDATE SET updated_at = excluded.updated_at""",
                (str(uuid.uuid4()), user_id, ts, ts),
            )
            position = await self._next_position(db, user_id)
            for line in lines:
                await db.execute(
                    """INSERT INTO cart_lines (user_id_fk, product_id, color_id, quantity, position)
                       VALUES (?,?,?,?,?)
                       ON CONFLICT(user_id_fk, product_id)
                       DO UPDATE SET quantity = quantity + excluded.quantity""",
                    (user_id, line.product_id, line.color_id, line.quantity, position),
                )
                position += 1
            cart = await self._load(db, user_id)

        if created:
            logger.info(f"No existing cart for user {user_id}. Created cart {cart.id}")
        logger.info(f"Merged {len(lines)} line(s) into cart of user {user_id}")
        return cart

    async def get_by_user(self, user_id: str) -> Optional[dict]:
        """Cart plus the catalog entries it references, or None."""
        async with get_db(self.db_path, self.timeout) as db:
            cart = await self._load(db, user_id)
        if cart is None:
            return None
        products = await self.catalog.find_by_ids([line.product_id for line in cart.cart])
        return {"cart": cart.to_dict(), "products": products}

    async def update_cart(self, user_id: str, lines: Optional[List[CartLine]] = None) -> Cart:
        """
        Replace-on-match: when `lines` is given it becomes the whole
        cart. Unknown cart → NotFound.
        """
        if lines is not None:
            lines = consolidate(_validate_lines(lines, allow_empty=True))
        ts = self._clock().isoformat()

        async with write_transaction(self.db_path, self.timeout) as db:
            cur = await db.execute(
                "UPDATE shopping_carts SET updated_at = ? WHERE user_id_fk = ?", (ts, user_id)
            )
            if cur.rowcount == 0:
                raise NotFound("Cart not found")
            if lines is not None:
                await db.execute("DELETE FROM cart_lines WHERE user_id_fk = ?", (user_id,))
                await db.executemany(
                    """INSERT INTO cart_lines (user_id_fk, product_id, color_id, quantity, position)
                       VALUES (?,?,?,?,?)""",
                    [
                        (user_id, line.product_id, line.color_id, line.quantity, i)
                        for i, line in enumerate(lines)
                    ],
                )
            cart = await self._load(db, user_id)

        logger.info(f"Cart updated for user {user_id}")
        return cart

    async def remove_line(self, user_id: str, product_id: str) -> dict:
        """Drop the line for product_id. Missing cart or line is a no-op."""
        async with write_transaction(self.db_path, self.timeout) as db:
            async with db.execute(
                "SELECT 1 FROM shopping_carts WHERE user_id_fk = ?", (user_id,)
            ) as cur:
                matched = 1 if await cur.fetchone() else 0
            cur = await db.execute(
                "DELETE FROM cart_lines WHERE user_id_fk = ? AND product_id = ?",
                (user_id, product_id),
            )
            modified = cur.rowcount
            if modified:
                await db.execute(
                    "UPDATE shopping_carts SET updated_at = ? WHERE user_id_fk = ?",
                    (self._clock().isoformat(), user_id),
                )

        logger.info(f"Removed product {product_id} from cart of user {user_id} (modified={modified})")
        return {"matched": matched, "modified": modified}


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────
router = APIRouter(prefix="/shopping_cart", tags=["shopping cart"])


def get_carts(request: Request) -> CartService:
    return request.app.state.carts


class CartLineIn(BaseModel):
    product_id: str = Field(min_length=1)
    color_id:   str = Field(min_length=1)
    quantity:   int = Field(ge=1)

    def to_line(self) -> CartLine:
        return CartLine(self.product_id, self.color_id, self.quantity)


class AddToCartRequest(BaseModel):
    user_id_fk: str = Field(min_length=1)
    cart:       List[CartLineIn] = Field(min_length=1)


class UpdateCartRequest(BaseModel):
    cart: Optional[List[CartLineIn]] = None


@router.post("")
async def add_to_cart(payload: AddToCartRequest, carts: CartService = Depends(get_carts)):
    cart = await carts.add_to_cart(payload.user_id_fk, [line.to_line() for line in payload.cart])
    return cart.to_dict()


@router.get("/{user_id_fk}")
async def get_cart(user_id_fk: str, carts: CartService = Depends(get_carts)):
    return await carts.get_by_user(user_id_fk)


@router.put("/{user_id_fk}")
async def update_cart(user_id_fk: str, payload: UpdateCartRequest,
                      carts: CartService = Depends(get_carts)):
    lines = [line.to_line() for line in payload.cart] if payload.cart is not None else None
    cart = await carts.update_cart(user_id_fk, lines)
    return cart.to_dict()


@router.delete("/{user_id_fk}/{product_id}")
async def remove_line(user_id_fk: str, product_id: str, carts: CartService = Depends(get_carts)):
    return await carts.remove_line(user_id_fk, product_id)
