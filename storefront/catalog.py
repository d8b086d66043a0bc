"""
Storefront — catalog.py
─────────────────────────────────────────────────────────────────
Read side of the product catalog, as the cart needs it.
Entries are stored as JSON documents keyed by id.
─────────────────────────────────────────────────────────────────
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from storefront.core.database import get_db

logger = logging.getLogger("storefront.catalog")


class ProductCatalog:

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    async def add(self, document: dict, product_id: Optional[str] = None) -> dict:
        """Store a catalog entry as-is. Used for seeding."""
        product_id = product_id or document.get("id") or str(uuid.uuid4())
        body = {k: v for k, v in document.items() if k != "id"}
        ts = datetime.now(timezone.utc).isoformat()
        async with get_db(self.db_path, self.timeout) as db:
            await db.execute(
                """INSERT INTO products (id, document, status, created_at, updated_at)
                   VALUES (?,?,?,?,?)""",
                (product_id, json.dumps(body), int(body.get("status", True)), ts, ts),
            )
            await db.commit()
        logger.info(f"Product added: {product_id}")
        return {"id": product_id, **body}

    async def find_by_ids(self, ids: List[str]) -> List[dict]:
        if not ids:
            return []
        marks = ",".join("?" * len(ids))
        async with get_db(self.db_path, self.timeout) as db:
            async with db.execute(
                f"SELECT id, document FROM products WHERE id IN ({marks})", tuple(ids)
            ) as cur:
                rows = await cur.fetchall()
        return [{"id": r["id"], **json.loads(r["document"])} for r in rows]
