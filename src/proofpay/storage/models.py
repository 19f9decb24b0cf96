"""Pydantic models mapping to the ProofPay database tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field

from proofpay.wallet.addresses import NATIVE_TOKEN, normalize_address


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


# Only these moves are legal; every other status is terminal.
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PAID, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


class InvoiceKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    CANCELLED = "cancelled"


class SignatureStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    MISMATCH = "mismatch"
    UNVERIFIABLE = "unverifiable"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate an opaque hex ID (16 characters)."""
    return uuid.uuid4().hex[:16]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Fixed-width ISO timestamp so that SQL string comparison orders correctly."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


# Lowercased, validated 0x address.
Address = Annotated[str, AfterValidator(normalize_address)]


# ---------------------------------------------------------------------------
# Identity models
# ---------------------------------------------------------------------------

class SignedAttestation(BaseModel):
    """A signed message vouching for control of ``subject_address``.

    ``signer_address`` is always the address *recovered* from the signature,
    never one claimed by the client. It is ``None`` when recovery failed.
    """

    model_config = {"frozen": True}

    message: str
    signature: str
    subject_address: Address
    signer_address: Optional[Address] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def verified(self) -> bool:
        return self.signer_address is not None and self.signer_address == self.subject_address


class WalletLink(BaseModel):
    """Maps to the ``wallet_links`` table."""

    address: Address
    label: str = ""
    parent_address: Optional[Address] = None
    is_primary: bool = False
    attestation: Optional[SignedAttestation] = None
    created_at: datetime = Field(default_factory=utcnow)


class IdentitySnapshot(BaseModel):
    """Read-only projection of an identity session for presentation code."""

    state: str
    primary_address: Optional[str] = None
    active_address: Optional[str] = None
    linked_addresses: list[str] = Field(default_factory=list)
    switching: bool = False
    switching_target: Optional[str] = None


# ---------------------------------------------------------------------------
# Payment models
# ---------------------------------------------------------------------------

class PaymentRequestDraft(BaseModel):
    """What a requester supplies to create a payment request."""

    requester_address: Address
    chain_id: int
    amount: str   # human decimal string, exactly as entered
    expires_at: datetime
    token_address: Address = NATIVE_TOKEN
    token_symbol: str = ""
    customer_name: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    additional_notes: str = ""


class PaymentRequest(BaseModel):
    """Maps to the ``payment_requests`` table."""

    id: str = Field(default_factory=_new_id)
    requester_address: str
    chain_id: int
    token_address: str = NATIVE_TOKEN
    token_symbol: str = ""
    amount: str   # stored as string to preserve decimal precision
    status: PaymentStatus = PaymentStatus.PENDING
    payment_link: str = ""
    customer_name: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    additional_notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    payer_address: Optional[str] = None
    settlement_tx_hash: Optional[str] = None
    paid_at: Optional[datetime] = None
    scan_from_block: Optional[int] = None   # first block searched for the payment

    @classmethod
    def new_id(cls) -> str:
        return _new_id()

    def is_open(self, now: datetime | None = None) -> bool:
        """Pending and not yet past its expiry."""
        now = now or utcnow()
        return self.status is PaymentStatus.PENDING and as_utc(self.expires_at) > now


class TransferEvent(BaseModel):
    """A token (or native currency) transfer observed on chain."""

    model_config = {"frozen": True}

    chain_id: int
    token_address: Address
    from_address: Address
    to_address: Address
    value: int          # raw on-chain units
    tx_hash: str
    block_number: Optional[int] = None


class TransactionState(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class TransactionStatus(BaseModel):
    tx_hash: str
    state: TransactionState
    block_number: Optional[int] = None


# ---------------------------------------------------------------------------
# Invoice model
# ---------------------------------------------------------------------------

class InvoiceRecord(BaseModel):
    """Maps to the ``invoices`` table."""

    id: str = Field(default_factory=_new_id)
    document_id: str
    request_id: Optional[str] = None
    kind: InvoiceKind = InvoiceKind.INCOME
    customer_name: str = ""
    customer_address: str = ""
    description: str = ""
    amount: str
    token_symbol: str = ""
    decimals: int = 18
    chain_id: int = 1
    from_address: Optional[str] = None
    to_address: str
    wallet_address: str
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    status: InvoiceStatus = InvoiceStatus.UNPAID
    signature_status: SignatureStatus = SignatureStatus.PENDING
    signed_by: Optional[str] = None
    signed_at: Optional[datetime] = None
    signature: Optional[str] = None
    signed_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
