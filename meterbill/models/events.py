"""
Payment Processor Events
========================

Typed view of the webhook payloads we act on. ``parse_event()`` turns a raw
JSON dict into exactly one variant of ``PaymentEvent``; any event type we do
not handle becomes ``UnhandledEvent`` so the reconciler's dispatch stays
exhaustive.

Only the fields the reconciler reads are modelled; everything else is
ignored (``extra="ignore"``).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def _ref(value: Any) -> Optional[str]:
    """Processor refs arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


class _ProcessorObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_as_strings(cls, value: Any) -> Dict[str, str]:
        if not value:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}


class InvoiceLinePeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: int = 0
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    period: Optional[InvoiceLinePeriod] = None

    @property
    def is_wallet_credit(self) -> bool:
        description = (self.description or "").lower()
        flagged = str(self.metadata.get("wallet_credit", "")).lower() == "true"
        return self.amount < 0 and ("wallet" in description or flagged)


class InvoiceLines(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceObject(_ProcessorObject):
    customer: Optional[str] = None
    subscription: Optional[str] = None
    status: Optional[str] = None
    subtotal: Optional[int] = None
    amount_due: Optional[int] = None
    amount_paid: Optional[int] = None
    total: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    number: Optional[str] = None
    billing_reason: Optional[str] = None
    lines: InvoiceLines = Field(default_factory=InvoiceLines)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def normalize_refs(cls, value: Any) -> Optional[str]:
        return _ref(value)

    @property
    def wallet_credit_minor(self) -> int:
        return sum(-line.amount for line in self.lines.data if line.is_wallet_credit)


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_ProcessorObject):
    customer: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[int] = None
    latest_invoice: Optional[str] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)

    @field_validator("customer", "latest_invoice", mode="before")
    @classmethod
    def normalize_refs(cls, value: Any) -> Optional[str]:
        return _ref(value)

    @property
    def period_end_epoch(self) -> Optional[int]:
        # Newer API versions report the period on the subscription items
        if self.current_period_end:
            return self.current_period_end
        for item in self.items.data:
            if item.current_period_end:
                return item.current_period_end
        return None


class CheckoutSessionObject(_ProcessorObject):
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def normalize_refs(cls, value: Any) -> Optional[str]:
        return _ref(value)


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    created: Optional[int] = None

    @property
    def created_at(self) -> Optional[datetime]:
        """Event creation time as naive UTC, if the processor sent one."""
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=timezone.utc).replace(tzinfo=None)


class _InvoiceData(BaseModel):
    object: InvoiceObject


class _SubscriptionData(BaseModel):
    object: SubscriptionObject


class _CheckoutData(BaseModel):
    object: CheckoutSessionObject


class InvoiceFinalized(_EventBase):
    type: Literal["invoice.finalized"]
    data: _InvoiceData


class InvoicePaid(_EventBase):
    type: Literal["invoice.paid"]
    data: _InvoiceData


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: _InvoiceData


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData


class UnhandledEvent(_EventBase):
    type: str


KnownEvent = Annotated[
    Union[
        InvoiceFinalized,
        InvoicePaid,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        CheckoutSessionCompleted,
    ],
    Field(discriminator="type"),
]

PaymentEvent = Union[
    InvoiceFinalized,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    SubscriptionDeleted,
    CheckoutSessionCompleted,
    UnhandledEvent,
]

HANDLED_EVENT_TYPES = frozenset({
    "invoice.finalized",
    "invoice.paid",
    "invoice.payment_failed",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "checkout.session.completed",
})

_known_adapter: TypeAdapter = TypeAdapter(KnownEvent)


def parse_event(payload: Dict[str, Any]) -> PaymentEvent:
    """Parse a decoded webhook body. Raises pydantic.ValidationError on junk."""
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _known_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
