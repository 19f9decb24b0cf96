"""ProofPay storage layer -- async SQLite database and Pydantic models."""

from proofpay.storage.database import Database, get_database
from proofpay.storage.models import (
    IdentitySnapshot,
    InvoiceKind,
    InvoiceRecord,
    InvoiceStatus,
    PaymentRequest,
    PaymentRequestDraft,
    PaymentStatus,
    SignatureStatus,
    SignedAttestation,
    TransactionState,
    TransactionStatus,
    TransferEvent,
    WalletLink,
)

__all__ = [
    "Database",
    "get_database",
    "IdentitySnapshot",
    "InvoiceKind",
    "InvoiceRecord",
    "InvoiceStatus",
    "PaymentRequest",
    "PaymentRequestDraft",
    "PaymentStatus",
    "SignatureStatus",
    "SignedAttestation",
    "TransactionState",
    "TransactionStatus",
    "TransferEvent",
    "WalletLink",
]
