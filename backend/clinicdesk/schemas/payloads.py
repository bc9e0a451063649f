from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from clinicdesk.services.billing import as_id


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    email: str | None = None


class CheckoutSession(BaseModel):
    """The subset of a Stripe Checkout Session that provisioning reads."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    customer: Any = None
    subscription: Any = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    payment_status: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def customer_id(self) -> str | None:
        return as_id(self.customer)

    @property
    def subscription_id(self) -> str | None:
        return as_id(self.subscription)

    def meta(self, key: str) -> str | None:
        value = (self.metadata or {}).get(key)
        return value if isinstance(value, str) and value else None

    def provision_status(self) -> str:
        if self.payment_status in {"paid", "no_payment_required"}:
            return "active"
        if self.status == "complete":
            return "active"
        return "incomplete"


class CheckoutSessionJobPayload(BaseModel):
    """Stored on a provisioning job so it can be re-run without the original webhook."""

    kind: Literal["checkout_session"] = "checkout_session"
    source: str = "stripe.checkout.session.completed"
    session: CheckoutSession


class InvalidJobPayloadError(Exception):
    pass


def build_job_payload(session: CheckoutSession, *, source: str | None = None) -> dict[str, Any]:
    payload = CheckoutSessionJobPayload(session=session)
    if source:
        payload = payload.model_copy(update={"source": source})
    return payload.model_dump(mode="json", exclude_none=True)


def parse_job_payload(raw: Any) -> CheckoutSessionJobPayload:
    if not isinstance(raw, dict):
        raise InvalidJobPayloadError("Provisioning payload is missing")
    try:
        return CheckoutSessionJobPayload.model_validate(raw)
    except ValidationError as exc:
        raise InvalidJobPayloadError(
            "Provisioning payload does not contain checkout session data"
        ) from exc


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class StripeEventIn(BaseModel):
    """Parsed webhook body: ``{id, type, data: {object}}``."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: StripeEventData = Field(default_factory=StripeEventData)
