"""
Development stand-in for the payment provider, mounted under ``/_provider``.

Random behavior on create and confirm:
  - SIMULATOR_OUTAGE_RATE: slow response => client timeout simulates outage
  - SIMULATOR_DECLINE_RATE: declined
  - rest: success

Charges and idempotent replies live in process memory, capped at
SIMULATOR_MAX_ENTRIES each; past the cap the oldest are forgotten and
answer 404 (or are created afresh on a replayed key).
"""

import asyncio
import random
import uuid
from collections import OrderedDict
from typing import Any, Dict

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from .settings import (
    PROVIDER_TIMEOUT_SECONDS,
    SIMULATOR_DECLINE_RATE,
    SIMULATOR_MAX_ENTRIES,
    SIMULATOR_OUTAGE_RATE,
)

router = APIRouter(prefix="/_provider", tags=["provider-simulator"])

MAX_ENTRIES = SIMULATOR_MAX_ENTRIES

charges: OrderedDict[str, Dict[str, Any]] = OrderedDict()
idempotent_responses: OrderedDict[str, Dict[str, Any]] = OrderedDict()


class ChargeRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    currency: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundBody(BaseModel):
    amount_cents: int = Field(gt=0)


async def _roll() -> str:
    roll = random.random()
    if roll < SIMULATOR_OUTAGE_RATE:
        # Even though we eventually return, the client will time out
        await asyncio.sleep(PROVIDER_TIMEOUT_SECONDS * 10)
        return "ok"
    if roll < SIMULATOR_OUTAGE_RATE + SIMULATOR_DECLINE_RATE:
        return "decline"
    return "ok"


def _remember(entries: OrderedDict[str, Dict[str, Any]], key: str, value: Dict[str, Any]) -> None:
    entries[key] = value
    while len(entries) > MAX_ENTRIES:
        entries.popitem(last=False)


def _charge(ref: str) -> Dict[str, Any]:
    charge = charges.get(ref)
    if charge is None:
        raise HTTPException(status_code=404, detail="Charge not found")
    return charge


@router.post("/charges")
async def create_charge(req: ChargeRequest, idempotency_key: str = Header(None, alias="Idempotency-Key")):
    if idempotency_key and idempotency_key in idempotent_responses:
        return idempotent_responses[idempotency_key]

    outcome = await _roll()
    ref = f"ch_{uuid.uuid4().hex[:16]}"
    status = "declined" if outcome == "decline" else "authorized"
    _remember(charges, ref, {"amount_cents": req.amount_cents, "currency": req.currency, "status": status, "refunded": 0})
    resp = {
        "provider_ref": ref,
        "status": status,
        "client_secret": f"{ref}_secret_{uuid.uuid4().hex[:8]}" if status == "authorized" else None,
        "failure_reason": "Card declined" if status == "declined" else None,
    }
    if idempotency_key:
        _remember(idempotent_responses, idempotency_key, resp)
    return resp


@router.post("/charges/{ref}/confirm")
async def confirm_charge(ref: str):
    charge = _charge(ref)
    if charge["status"] in ("succeeded", "partially_refunded", "refunded"):
        return {"provider_ref": ref, "status": "succeeded"}
    if charge["status"] == "declined":
        return {"provider_ref": ref, "status": "declined", "failure_reason": "Card declined"}

    outcome = await _roll()
    if outcome == "decline":
        charge["status"] = "declined"
        return {"provider_ref": ref, "status": "declined", "failure_reason": "Card declined"}
    charge["status"] = "succeeded"
    return {"provider_ref": ref, "status": "succeeded"}


@router.post("/charges/{ref}/refunds")
async def refund_charge(ref: str, body: RefundBody, idempotency_key: str = Header(None, alias="Idempotency-Key")):
    if idempotency_key and idempotency_key in idempotent_responses:
        return idempotent_responses[idempotency_key]

    charge = _charge(ref)
    if charge["status"] not in ("succeeded", "partially_refunded"):
        resp = {"provider_ref": ref, "amount_cents": body.amount_cents, "status": "failed",
                "failure_reason": f"Charge is {charge['status']}"}
    elif charge["refunded"] + body.amount_cents > charge["amount_cents"]:
        resp = {"provider_ref": ref, "amount_cents": body.amount_cents, "status": "failed",
                "failure_reason": "Refund exceeds captured amount"}
    else:
        charge["refunded"] += body.amount_cents
        charge["status"] = "refunded" if charge["refunded"] >= charge["amount_cents"] else "partially_refunded"
        resp = {"provider_ref": ref, "refund_ref": f"re_{uuid.uuid4().hex[:12]}",
                "amount_cents": body.amount_cents, "status": "succeeded"}
    if idempotency_key:
        _remember(idempotent_responses, idempotency_key, resp)
    return resp


@router.get("/charges/{ref}")
def get_charge(ref: str):
    charge = _charge(ref)
    return {
        "provider_ref": ref,
        "status": charge["status"],
        "amount_cents": charge["amount_cents"],
        "amount_refunded_cents": charge["refunded"],
    }
