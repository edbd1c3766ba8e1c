"""
Order Validator.

Groups cart lines by seller, re-reads the authoritative price and stock of
every product, and returns one ValidatedSellerOrder per seller with at least
one admitted line. Nothing is written; the only side effect is the catalog
read.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Tuple

from .catalog import Catalog
from .errors import ValidationRejected
from .hashing import cart_hash, seller_order_key
from .models import CartLine, CartValidation, CatalogQuote, RejectedLine, ValidatedLine, ValidatedSellerOrder

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_valid_uuid(value: str) -> bool:
    return bool(value) and bool(UUID_RE.match(value))


def group_by_seller(lines: List[CartLine]) -> Dict[str, List[Tuple[int, CartLine]]]:
    """Partition lines by seller, keeping sellers in order of first appearance."""
    groups: Dict[str, List[Tuple[int, CartLine]]] = {}
    for index, line in enumerate(lines):
        groups.setdefault(line.seller_id, []).append((index, line))
    return groups


class OrderValidator:
    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    async def _quotes(self, lines: List[CartLine]) -> Dict[str, Optional[CatalogQuote]]:
        product_ids = sorted({line.product_id for line in lines if is_valid_uuid(line.product_id)})
        quotes = await asyncio.gather(*(self.catalog.get_authoritative_price(pid) for pid in product_ids))
        return dict(zip(product_ids, quotes))

    async def validate(self, buyer_id: str, lines: List[CartLine]) -> CartValidation:
        if not lines:
            raise ValidationRejected("Cart is empty")

        digest = cart_hash(buyer_id, lines)
        quotes = await self._quotes(lines)
        orders: List[ValidatedSellerOrder] = []
        all_rejected: List[RejectedLine] = []

        for seller_id, group in group_by_seller(lines).items():
            admitted: List[ValidatedLine] = []
            rejected: List[RejectedLine] = []
            for index, line in group:
                reason, message = self._check_line(seller_id, line, quotes.get(line.product_id))
                if reason:
                    rejected.append(
                        RejectedLine(
                            line_index=index,
                            product_id=line.product_id,
                            seller_id=seller_id,
                            quantity=line.quantity,
                            reason=reason,
                            message=message,
                        )
                    )
                    continue
                quote = quotes[line.product_id]
                admitted.append(
                    ValidatedLine(
                        line_index=index,
                        product_id=line.product_id,
                        quantity=line.quantity,
                        unit_price_cents=quote.price_cents,
                        line_total_cents=quote.price_cents * line.quantity,
                        price_changed=quote.price_cents != line.unit_price_cents,
                    )
                )

            all_rejected.extend(rejected)
            if not admitted:
                logger.info("seller %s dropped from cart of buyer %s: every line rejected", seller_id, buyer_id)
                continue
            orders.append(
                ValidatedSellerOrder(
                    seller_order_key=seller_order_key(digest, seller_id),
                    seller_id=seller_id,
                    lines=admitted,
                    rejected=rejected,
                    total_cents=sum(line.line_total_cents for line in admitted),
                )
            )

        if not orders:
            raise ValidationRejected(
                "No item in the cart can be ordered",
                rejected=[r.model_dump() for r in all_rejected],
            )

        logger.info(
            "cart of buyer %s validated: %d seller order(s), %d rejected line(s)",
            buyer_id, len(orders), len(all_rejected),
        )
        return CartValidation(buyer_id=buyer_id, cart_hash=digest, orders=orders, rejected=all_rejected)

    @staticmethod
    def _check_line(seller_id: str, line: CartLine, quote: Optional[CatalogQuote]) -> Tuple[Optional[str], str]:
        if not is_valid_uuid(seller_id):
            return "invalid_seller", "Invalid seller ID format"
        if not is_valid_uuid(line.product_id):
            return "invalid_product", "Invalid product ID format"
        if line.quantity <= 0:
            return "invalid_quantity", "Quantity must be positive"
        if quote is None or quote.withdrawn:
            return "withdrawn", f"Product {line.product_id} is no longer available"
        if quote.seller_id and quote.seller_id != seller_id:
            return "seller_mismatch", f"Product {line.product_id} does not belong to this seller"
        if line.quantity < quote.min_order_quantity:
            return "below_minimum", f"Minimum order quantity is {quote.min_order_quantity}"
        if quote.available_quantity < line.quantity:
            return "insufficient_stock", f"Insufficient quantity. Available: {quote.available_quantity}"
        return None, ""
