"""Invoices and signed payment receipts.

An invoice is opened for a pending payment request, follows it to ``paid``
or ``cancelled``, and can then be countersigned by the receiving wallet. The
receipt signature is recorded once and never replaced.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from proofpay.core.events import REQUEST_CANCELLED, REQUEST_PAID, DomainEvent, EventBus
from proofpay.errors import (
    AmbiguousIdentity,
    ChainDataError,
    InvoiceNotFound,
    ValidationError,
)
from proofpay.identity.registry import WalletLinkRegistry
from proofpay.identity.signature import attest, build_receipt_message
from proofpay.payments.store import PaymentRequestStore
from proofpay.storage.database import Database
from proofpay.storage.models import (
    InvoiceKind,
    InvoiceRecord,
    InvoiceStatus,
    PaymentRequest,
    PaymentStatus,
    SignatureStatus,
    to_db_time,
    utcnow,
)
from proofpay.wallet.addresses import normalize_address
from proofpay.wallet.chains import explorer_tx_url
from proofpay.wallet.provider import ChainDataProvider

logger = logging.getLogger("proofpay.payments.invoices")

_ID_ATTEMPTS = 5
DOCUMENT_PREFIX = "INV"


def _row_to_invoice(row: dict) -> InvoiceRecord:
    return InvoiceRecord.model_validate(row)


class InvoiceStore:
    """Invoices linked to payment requests, stored in the ``invoices`` table."""

    def __init__(
        self,
        db: Database,
        requests: PaymentRequestStore,
        registry: WalletLinkRegistry,
        chain_data: ChainDataProvider,
    ) -> None:
        self.db = db
        self.requests = requests
        self.registry = registry
        self.chain_data = chain_data

    def attach(self, bus: EventBus) -> None:
        """Follow payment requests to paid / cancelled."""
        bus.subscribe(REQUEST_PAID, self._on_paid)
        bus.subscribe(REQUEST_CANCELLED, self._on_cancelled)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _next_document_id(self, prefix: str, now: datetime) -> str:
        stem = f"{prefix}-{now.strftime('%Y%m%d')}-"
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM invoices WHERE document_id LIKE ?", (stem + "%",)
        )
        return f"{stem}{(int(row['n']) if row else 0) + 1:03d}"

    async def create_for_request(
        self,
        request: PaymentRequest | str,
        *,
        kind: InvoiceKind = InvoiceKind.INCOME,
        customer_address: str = "",
    ) -> InvoiceRecord:
        """Open an unpaid invoice for a pending payment request.

        Raises
        ------
        ValidationError
            If the request is no longer pending or already has an invoice.
        """
        if isinstance(request, str):
            request = await self.requests.get(request)
        if request.status is not PaymentStatus.PENDING:
            raise ValidationError(f"Request {request.id} is {request.status.value}; invoices need a pending request.")
        if await self.find_by_request(request.id) is not None:
            raise ValidationError(f"Request {request.id} already has an invoice.")

        decimals = await self.chain_data.get_token_decimals(request.chain_id, request.token_address)
        now = utcnow()
        for _ in range(_ID_ATTEMPTS):
            invoice = InvoiceRecord(
                document_id=await self._next_document_id(DOCUMENT_PREFIX, now),
                request_id=request.id,
                kind=kind,
                customer_name=request.customer_name,
                customer_address=normalize_address(customer_address) if customer_address else "",
                description=request.description,
                amount=request.amount,
                token_symbol=request.token_symbol,
                decimals=decimals,
                chain_id=request.chain_id,
                to_address=request.requester_address,
                wallet_address=request.requester_address,
                created_at=now,
            )
            try:
                await self._insert(invoice)
            except sqlite3.IntegrityError:
                logger.debug(f"Document id {invoice.document_id} taken, retrying")
                continue
            logger.info(f"Invoice {invoice.document_id} opened for request {request.id}")
            return invoice
        raise ValidationError("Could not allocate a document id; try again.")

    async def _insert(self, invoice: InvoiceRecord) -> None:
        await self.db.execute(
            "INSERT INTO invoices "
            "(id, document_id, request_id, kind, customer_name, customer_address, description, "
            "amount, token_symbol, decimals, chain_id, from_address, to_address, wallet_address, "
            "status, signature_status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                invoice.id,
                invoice.document_id,
                invoice.request_id,
                invoice.kind.value,
                invoice.customer_name,
                invoice.customer_address,
                invoice.description,
                invoice.amount,
                invoice.token_symbol,
                invoice.decimals,
                invoice.chain_id,
                invoice.from_address,
                invoice.to_address,
                invoice.wallet_address,
                invoice.status.value,
                invoice.signature_status.value,
                to_db_time(invoice.created_at),
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, document_id: str) -> Optional[InvoiceRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM invoices WHERE document_id = ?", (document_id,)
        )
        return _row_to_invoice(row) if row else None

    async def get(self, document_id: str) -> InvoiceRecord:
        invoice = await self.find(document_id)
        if invoice is None:
            raise InvoiceNotFound(document_id)
        return invoice

    async def find_by_request(self, request_id: str) -> Optional[InvoiceRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM invoices WHERE request_id = ? ORDER BY created_at LIMIT 1",
            (request_id,),
        )
        return _row_to_invoice(row) if row else None

    async def list_for_wallets(self, addresses: list[str], limit: int = 100) -> list[InvoiceRecord]:
        if not addresses:
            return []
        normalized = [normalize_address(a) for a in addresses]
        rows = await self.db.fetch_all(
            f"SELECT * FROM invoices WHERE wallet_address IN ({', '.join('?' for _ in normalized)}) "
            "ORDER BY created_at DESC LIMIT ?",
            (*normalized, limit),
        )
        return [_row_to_invoice(r) for r in rows]

    def explorer_url(self, invoice: InvoiceRecord) -> str | None:
        if not invoice.transaction_hash:
            return None
        return explorer_tx_url(invoice.chain_id, invoice.transaction_hash)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def mark_paid(
        self,
        request_id: str,
        tx_hash: str,
        payer_address: str | None,
        paid_at: datetime | None = None,
    ) -> Optional[InvoiceRecord]:
        """Record settlement on the request's invoice, if it has one."""
        invoice = await self.find_by_request(request_id)
        if invoice is None or invoice.status is not InvoiceStatus.UNPAID:
            return invoice

        block_number = None
        try:
            status = await self.chain_data.get_transaction_status(invoice.chain_id, tx_hash)
            block_number = status.block_number
        except ChainDataError as exc:
            logger.warning(f"No block number for {tx_hash} yet: {exc}")

        changes: dict[str, Any] = {
            "status": InvoiceStatus.PAID.value,
            "transaction_hash": tx_hash,
            "block_number": block_number,
            "from_address": normalize_address(payer_address) if payer_address else None,
            "paid_at": to_db_time(paid_at or utcnow()),
        }
        if await self.db.compare_and_set(
            "invoices", "document_id", invoice.document_id, "status", InvoiceStatus.UNPAID.value, changes
        ):
            logger.info(f"Invoice {invoice.document_id} paid in {tx_hash}")
        return await self.get(invoice.document_id)

    async def mark_cancelled(self, request_id: str) -> Optional[InvoiceRecord]:
        invoice = await self.find_by_request(request_id)
        if invoice is None or invoice.status is not InvoiceStatus.UNPAID:
            return invoice
        await self.db.compare_and_set(
            "invoices", "document_id", invoice.document_id, "status",
            InvoiceStatus.UNPAID.value, {"status": InvoiceStatus.CANCELLED.value},
        )
        return await self.get(invoice.document_id)

    async def _on_paid(self, event: DomainEvent) -> None:
        payload = event.payload
        await self.mark_paid(
            payload["request_id"],
            payload.get("settlement_tx_hash") or "",
            payload.get("payer_address"),
        )

    async def _on_cancelled(self, event: DomainEvent) -> None:
        await self.mark_cancelled(event.payload["request_id"])

    # ------------------------------------------------------------------
    # Receipt signatures
    # ------------------------------------------------------------------

    def receipt_message(self, invoice: InvoiceRecord) -> str:
        """The confirmation the receiving wallet signs for a paid invoice."""
        if invoice.status is not InvoiceStatus.PAID or not invoice.transaction_hash:
            raise ValidationError(f"Invoice {invoice.document_id} is not paid yet.")
        paid_on = (invoice.paid_at or invoice.created_at).strftime("%Y-%m-%d")
        return build_receipt_message(
            wallet_address=invoice.wallet_address,
            amount=invoice.amount,
            token=invoice.token_symbol,
            from_address=invoice.from_address or "unknown",
            date=paid_on,
            tx_hash=invoice.transaction_hash,
        )

    async def _same_identity(self, a: str, b: str) -> bool:
        if a == b:
            return True
        try:
            primary_a = await self.registry.get_primary(a)
            primary_b = await self.registry.get_primary(b)
        except AmbiguousIdentity:
            return False
        return primary_a is not None and primary_b is not None and primary_a.address == primary_b.address

    async def sign(self, document_id: str, signature: str) -> InvoiceRecord:
        """Record the receiving wallet's signature on a paid invoice.

        The outcome is ``signed`` when the recovered signer is the invoice
        wallet or another wallet of the same identity, ``mismatch`` for any
        other signer, and ``unverifiable`` when no signer can be recovered.

        Raises
        ------
        ValidationError
            If the invoice is unpaid or already carries a signature.
        """
        invoice = await self.get(document_id)
        if invoice.signature_status is not SignatureStatus.PENDING:
            raise ValidationError(f"Invoice {document_id} is already {invoice.signature_status.value}.")
        message = self.receipt_message(invoice)

        attestation = attest(message, signature, invoice.wallet_address)
        if attestation.signer_address is None:
            outcome = SignatureStatus.UNVERIFIABLE
        elif await self._same_identity(attestation.signer_address, invoice.wallet_address):
            outcome = SignatureStatus.SIGNED
        else:
            outcome = SignatureStatus.MISMATCH

        applied = await self.db.compare_and_set(
            "invoices",
            "document_id",
            document_id,
            "signature_status",
            SignatureStatus.PENDING.value,
            {
                "signature_status": outcome.value,
                "signed_by": attestation.signer_address,
                "signed_at": to_db_time(attestation.timestamp),
                "signature": attestation.signature,
                "signed_message": message,
            },
        )
        if not applied:
            raise ValidationError(f"Invoice {document_id} was signed concurrently.")
        logger.info(f"Invoice {document_id} signature: {outcome.value}")
        return await self.get(document_id)
