"""
Payment provider contract.

Each provider operation returns its own result model with a ``status``
literal, so callers branch on a closed set of outcomes instead of probing
response fields. Timeouts and transport failures surface as
``ProviderTransientError`` and never as an outcome.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel, ValidationError

from .errors import PaymentRejected, ProviderTransientError
from .settings import PROVIDER_BASE_URL, PROVIDER_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class ChargeCreated(BaseModel):
    provider_ref: str
    status: Literal["authorized", "declined"]
    client_secret: Optional[str] = None
    failure_reason: Optional[str] = None


class ChargeConfirmation(BaseModel):
    provider_ref: str
    status: Literal["succeeded", "declined", "pending"]
    failure_reason: Optional[str] = None


class RefundIssued(BaseModel):
    provider_ref: str
    refund_ref: Optional[str] = None
    amount_cents: int
    status: Literal["succeeded", "failed"]
    failure_reason: Optional[str] = None


class ChargeSnapshot(BaseModel):
    provider_ref: str
    status: Literal["authorized", "succeeded", "declined", "refunded", "partially_refunded"]
    amount_cents: int
    amount_refunded_cents: int = 0


class PaymentProvider(ABC):
    @abstractmethod
    async def create_charge(
        self, amount_cents: int, currency: str, idempotency_key: str, metadata: Dict[str, Any]
    ) -> ChargeCreated: ...

    @abstractmethod
    async def confirm_charge(self, provider_ref: str) -> ChargeConfirmation: ...

    @abstractmethod
    async def refund(self, provider_ref: str, amount_cents: int, idempotency_key: str) -> RefundIssued: ...

    @abstractmethod
    async def fetch_charge_status(self, provider_ref: str) -> ChargeSnapshot: ...


class HttpProvider(PaymentProvider):
    def __init__(
        self,
        base_url: str = PROVIDER_BASE_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _call(self, method: str, path: str, model, **kwargs):
        try:
            async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport) as client:
                r = await client.request(method, path, timeout=self.timeout, **kwargs)
                r.raise_for_status()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("provider %s %s unavailable: %s", method, path, exc.__class__.__name__)
            raise ProviderTransientError(f"Payment provider unavailable: {exc.__class__.__name__}") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500:
                raise ProviderTransientError(f"Payment provider error HTTP {exc.response.status_code}") from exc
            raise PaymentRejected(f"Payment provider refused the request: HTTP {exc.response.status_code}") from exc
        try:
            return model.model_validate(r.json())
        except ValidationError as exc:
            logger.error("provider %s %s returned an unexpected payload: %s", method, path, r.text)
            raise ProviderTransientError("Payment provider returned an unexpected payload") from exc

    async def create_charge(
        self, amount_cents: int, currency: str, idempotency_key: str, metadata: Dict[str, Any]
    ) -> ChargeCreated:
        return await self._call(
            "POST",
            "/charges",
            ChargeCreated,
            json={"amount_cents": amount_cents, "currency": currency.lower(), "metadata": metadata},
            headers={"Idempotency-Key": idempotency_key},
        )

    async def confirm_charge(self, provider_ref: str) -> ChargeConfirmation:
        return await self._call("POST", f"/charges/{provider_ref}/confirm", ChargeConfirmation)

    async def refund(self, provider_ref: str, amount_cents: int, idempotency_key: str) -> RefundIssued:
        return await self._call(
            "POST",
            f"/charges/{provider_ref}/refunds",
            RefundIssued,
            json={"amount_cents": amount_cents},
            headers={"Idempotency-Key": idempotency_key},
        )

    async def fetch_charge_status(self, provider_ref: str) -> ChargeSnapshot:
        return await self._call("GET", f"/charges/{provider_ref}", ChargeSnapshot)


Behaviour = Literal["ok", "decline", "timeout", "pending"]


class FakeProvider(PaymentProvider):
    """
    Scriptable provider for tests and local runs.

    ``next_create`` / ``next_confirm`` / ``next_refund`` set the outcome of
    the following call of that kind and reset to ``"ok"`` afterwards.
    Charges and refunds replay by idempotency key like the real provider and
    are kept for the life of the instance.
    """

    def __init__(self) -> None:
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.created: Dict[str, ChargeCreated] = {}
        self.refunds: Dict[str, RefundIssued] = {}
        self.calls: List[Dict[str, Any]] = []
        self.next_create: Behaviour = "ok"
        self.next_confirm: Behaviour = "ok"
        self.next_refund: Behaviour = "ok"

    def _take(self, attr: str) -> Behaviour:
        behaviour = getattr(self, attr)
        setattr(self, attr, "ok")
        return behaviour

    async def create_charge(
        self, amount_cents: int, currency: str, idempotency_key: str, metadata: Dict[str, Any]
    ) -> ChargeCreated:
        self.calls.append({"method": "create_charge", "amount_cents": amount_cents, "key": idempotency_key})
        if idempotency_key in self.created:
            return self.created[idempotency_key]
        behaviour = self._take("next_create")
        if behaviour == "timeout":
            raise ProviderTransientError("Payment provider unavailable: ReadTimeout")
        ref = f"ch_{uuid4().hex[:16]}"
        status = "declined" if behaviour == "decline" else "authorized"
        self.charges[ref] = {"amount_cents": amount_cents, "status": status, "refunded": 0}
        created = ChargeCreated(
            provider_ref=ref,
            status=status,
            client_secret=f"{ref}_secret_{uuid4().hex[:8]}" if status == "authorized" else None,
            failure_reason="Card declined" if status == "declined" else None,
        )
        self.created[idempotency_key] = created
        return created

    async def confirm_charge(self, provider_ref: str) -> ChargeConfirmation:
        self.calls.append({"method": "confirm_charge", "provider_ref": provider_ref})
        behaviour = self._take("next_confirm")
        if behaviour == "timeout":
            raise ProviderTransientError("Payment provider unavailable: ReadTimeout")
        charge = self.charges[provider_ref]
        if behaviour == "pending":
            return ChargeConfirmation(provider_ref=provider_ref, status="pending")
        if behaviour == "decline" or charge["status"] == "declined":
            charge["status"] = "declined"
            return ChargeConfirmation(provider_ref=provider_ref, status="declined", failure_reason="Card declined")
        charge["status"] = "succeeded"
        return ChargeConfirmation(provider_ref=provider_ref, status="succeeded")

    async def refund(self, provider_ref: str, amount_cents: int, idempotency_key: str) -> RefundIssued:
        self.calls.append(
            {"method": "refund", "provider_ref": provider_ref, "amount_cents": amount_cents, "key": idempotency_key}
        )
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        behaviour = self._take("next_refund")
        if behaviour == "timeout":
            raise ProviderTransientError("Payment provider unavailable: ReadTimeout")
        if behaviour == "decline":
            return RefundIssued(
                provider_ref=provider_ref, amount_cents=amount_cents, status="failed", failure_reason="Refund refused"
            )
        charge = self.charges[provider_ref]
        charge["refunded"] += amount_cents
        charge["status"] = "refunded" if charge["refunded"] >= charge["amount_cents"] else "partially_refunded"
        issued = RefundIssued(
            provider_ref=provider_ref, refund_ref=f"re_{uuid4().hex[:12]}", amount_cents=amount_cents, status="succeeded"
        )
        self.refunds[idempotency_key] = issued
        return issued

    async def fetch_charge_status(self, provider_ref: str) -> ChargeSnapshot:
        self.calls.append({"method": "fetch_charge_status", "provider_ref": provider_ref})
        charge = self.charges[provider_ref]
        return ChargeSnapshot(
            provider_ref=provider_ref,
            status=charge["status"],
            amount_cents=charge["amount_cents"],
            amount_refunded_cents=charge["refunded"],
        )

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call["method"] == method)
