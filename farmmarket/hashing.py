import hashlib
import json
from typing import Iterable, List

from .models import CartLine


def sha256_json(obj) -> str:
    raw = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def cart_hash(buyer_id: str, lines: List[CartLine]) -> str:
    return sha256_json({"buyer_id": buyer_id, "lines": [line.model_dump() for line in lines]})


def seller_order_key(cart_digest: str, seller_id: str) -> str:
    return hashlib.sha256(f"{cart_digest}:{seller_id}".encode("utf-8")).hexdigest()[:16]


def commit_key(cart_digest: str, payment_ids: Iterable[str]) -> str:
    """Idempotency key of one checkout commit: cart snapshot plus the payment(s) settling it."""
    joined = ",".join(sorted(payment_ids))
    return hashlib.sha256(f"{cart_digest}:{joined}".encode("utf-8")).hexdigest()


def stock_key(commit: str, seller_id: str, line_index: int) -> str:
    return f"{commit}:{seller_id}:{line_index}"


def restore_key(stock: str) -> str:
    return f"restore:{stock}"


def cancel_restore_key(order_id: str, line_index: int) -> str:
    return f"cancel:{order_id}:{line_index}"
