"""Persistent payment requests and their status lifecycle.

Every status change goes through :meth:`PaymentRequestStore.transition`, a
conditional update keyed by the expected current status. Whoever loses a race
gets ``False`` back and must re-read instead of overwriting.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from proofpay.config import ProofPayConfig
from proofpay.core.events import (
    REQUEST_CANCELLED,
    REQUEST_CREATED,
    REQUEST_EXPIRED,
    REQUEST_PAID,
    EventBus,
)
from proofpay.errors import InvalidTransition, NotLinked, RequestNotFound, ValidationError
from proofpay.identity.session import IdentitySession
from proofpay.storage.database import Database
from proofpay.storage.models import (
    ALLOWED_TRANSITIONS,
    PaymentRequest,
    PaymentRequestDraft,
    PaymentStatus,
    as_utc,
    to_db_time,
    utcnow,
)
from proofpay.wallet.addresses import is_native, normalize_address
from proofpay.wallet.units import parse_decimal

logger = logging.getLogger("proofpay.payments.store")

_EVENTS = {
    PaymentStatus.PAID: REQUEST_PAID,
    PaymentStatus.EXPIRED: REQUEST_EXPIRED,
    PaymentStatus.CANCELLED: REQUEST_CANCELLED,
}

# Columns a transition may set besides status / updated_at.
_TRANSITION_FIELDS = frozenset({"payer_address", "settlement_tx_hash", "paid_at"})


def _row_to_request(row: dict) -> PaymentRequest:
    data = dict(row)
    data["tags"] = json.loads(data.pop("tags_json", None) or "[]")
    return PaymentRequest.model_validate(data)


class PaymentRequestStore:
    """CRUD and guarded status transitions for ``payment_requests``."""

    def __init__(
        self,
        db: Database,
        config: ProofPayConfig,
        bus: EventBus | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.bus = bus

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        draft: PaymentRequestDraft,
        session: IdentitySession,
        scan_from_block: int | None = None,
    ) -> PaymentRequest:
        """Validate *draft* and persist it as a pending request.

        Parameters
        ----------
        draft:
            Requester-supplied fields. ``amount`` is kept exactly as entered.
        session:
            The active identity; the requester must be one of its wallets.
        scan_from_block:
            Chain height when the request was made. Settlement is searched
            from this block on; ``None`` lets the watcher pick it on first watch.

        Raises
        ------
        InvalidAmount
            If the amount is not a positive decimal.
        ValidationError
            If the expiry is not in the future or the chain is not supported.
        NotLinked
            If the requester is not a wallet of the active identity.
        """
        amount = draft.amount.strip()
        parse_decimal(amount)

        now = utcnow()
        expires_at = as_utc(draft.expires_at)
        if expires_at <= now:
            raise ValidationError("Expiry must be in the future.")

        if not session.owns(draft.requester_address):
            raise NotLinked(
                f"Wallet {draft.requester_address} is not part of the active identity."
            )

        try:
            chain = self.config.resolve_chain(draft.chain_id)
        except KeyError as exc:
            raise ValidationError(str(exc.args[0])) from exc

        token_symbol = draft.token_symbol.strip()
        if not token_symbol and is_native(draft.token_address):
            token_symbol = chain.native_symbol

        request_id = PaymentRequest.new_id()
        request = PaymentRequest(
            id=request_id,
            requester_address=draft.requester_address,
            chain_id=chain.chain_id,
            token_address=draft.token_address,
            token_symbol=token_symbol,
            amount=amount,
            status=PaymentStatus.PENDING,
            payment_link=self.config.payment_link(request_id),
            customer_name=draft.customer_name,
            description=draft.description,
            tags=draft.tags,
            additional_notes=draft.additional_notes,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            scan_from_block=scan_from_block,
        )
        await self.db.execute(
            "INSERT INTO payment_requests "
            "(id, requester_address, chain_id, token_address, token_symbol, amount, status, "
            "payment_link, customer_name, description, tags_json, additional_notes, "
            "created_at, updated_at, expires_at, scan_from_block) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                request.id,
                request.requester_address,
                request.chain_id,
                request.token_address,
                request.token_symbol,
                request.amount,
                request.status.value,
                request.payment_link,
                request.customer_name,
                request.description,
                json.dumps(request.tags),
                request.additional_notes,
                to_db_time(request.created_at),
                to_db_time(request.updated_at),
                to_db_time(request.expires_at),
                request.scan_from_block,
            ),
        )
        logger.info(
            f"Payment request {request.id} created: {amount} {token_symbol or request.token_address} "
            f"to {request.requester_address} on chain {request.chain_id}"
        )
        await self._emit(REQUEST_CREATED, request_id=request.id, requester_address=request.requester_address)
        return request

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, request_id: str) -> Optional[PaymentRequest]:
        row = await self.db.fetch_one(
            "SELECT * FROM payment_requests WHERE id = ?", (request_id,)
        )
        return _row_to_request(row) if row else None

    async def get(self, request_id: str) -> PaymentRequest:
        request = await self.find(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    async def list_requests(
        self,
        requester_addresses: Optional[list[str]] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = 100,
    ) -> list[PaymentRequest]:
        """Newest first, optionally filtered by requester wallets and status."""
        clauses: list[str] = []
        params: list[Any] = []
        if requester_addresses:
            addresses = [normalize_address(a) for a in requester_addresses]
            clauses.append(f"requester_address IN ({', '.join('?' for _ in addresses)})")
            params.extend(addresses)
        if status is not None:
            clauses.append("status = ?")
            params.append(PaymentStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM payment_requests {where}ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_request(r) for r in rows]

    async def list_open(self, now: datetime | None = None) -> list[PaymentRequest]:
        """Pending requests that have not reached their expiry, oldest first."""
        rows = await self.db.fetch_all(
            "SELECT * FROM payment_requests WHERE status = ? AND expires_at > ? "
            "ORDER BY created_at",
            (PaymentStatus.PENDING.value, to_db_time(now or utcnow())),
        )
        return [_row_to_request(r) for r in rows]

    async def list_due(self, now: datetime | None = None) -> list[PaymentRequest]:
        """Pending requests whose expiry is at or before *now*."""
        rows = await self.db.fetch_all(
            "SELECT * FROM payment_requests WHERE status = ? AND expires_at <= ? "
            "ORDER BY expires_at",
            (PaymentStatus.PENDING.value, to_db_time(now or utcnow())),
        )
        return [_row_to_request(r) for r in rows]

    async def set_scan_start(self, request_id: str, block_number: int) -> int:
        """Record the first block to search for *request_id*'s payment.

        Only the first value written sticks. Returns the block that is
        stored afterwards.
        """
        await self.db.execute(
            "UPDATE payment_requests SET scan_from_block = ? "
            "WHERE id = ? AND scan_from_block IS NULL",
            (int(block_number), request_id),
        )
        request = await self.get(request_id)
        return request.scan_from_block

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        request_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **fields: Any,
    ) -> bool:
        """Move *request_id* from *expected* to *target* if it is still *expected*.

        Returns ``True`` if this call applied the change and ``False`` if the
        record had already left *expected*.

        Raises
        ------
        InvalidTransition
            If *target* is not reachable from *expected* at all.
        RequestNotFound
            If there is no such request.
        """
        expected = PaymentStatus(expected)
        target = PaymentStatus(target)
        if target not in ALLOWED_TRANSITIONS[expected]:
            raise InvalidTransition(request_id, expected.value, target.value)

        changes: dict[str, Any] = {"status": target.value, "updated_at": to_db_time(utcnow())}
        for key, value in fields.items():
            if key not in _TRANSITION_FIELDS:
                raise ValueError(f"Transition cannot set column {key!r}")
            if isinstance(value, datetime):
                value = to_db_time(value)
            elif key == "payer_address" and value is not None:
                value = normalize_address(value)
            changes[key] = value

        applied = await self.db.compare_and_set(
            "payment_requests", "id", request_id, "status", expected.value, changes
        )
        if not applied:
            current = await self.find(request_id)
            if current is None:
                raise RequestNotFound(request_id)
            logger.debug(
                f"Request {request_id} is already '{current.status.value}'; "
                f"'{target.value}' not applied"
            )
            return False

        logger.info(f"Payment request {request_id}: {expected.value} -> {target.value}")
        payload = {k: v for k, v in changes.items() if k in _TRANSITION_FIELDS}
        await self._emit(_EVENTS[target], request_id=request_id, **payload)
        return True

    async def cancel(
        self,
        request_id: str,
        session: IdentitySession | None = None,
    ) -> PaymentRequest:
        """Cancel a pending request.

        Raises
        ------
        InvalidTransition
            If the request is no longer pending, including when it was paid
            or expired while this call was running.
        NotLinked
            If *session* is given and does not own the request.
        """
        request = await self.get(request_id)
        if session is not None and not session.owns(request.requester_address):
            raise NotLinked(f"Request {request_id} belongs to another identity.")
        if request.status is not PaymentStatus.PENDING:
            raise InvalidTransition(request_id, request.status.value, PaymentStatus.CANCELLED.value)

        if not await self.transition(request_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED):
            current = await self.get(request_id)
            raise InvalidTransition(request_id, current.status.value, PaymentStatus.CANCELLED.value)
        return await self.get(request_id)

    async def _emit(self, name: str, **payload: Any) -> None:
        if self.bus is not None:
            await self.bus.emit(name, **payload)
