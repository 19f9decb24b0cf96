"""Durable store of wallet ownership links.

Each identity is one primary wallet plus at most :data:`MAX_SUB_WALLETS`
sub-wallets. Sub-wallets reference the primary through ``parent_address``;
a primary has no parent. Links are only ever added with a verified
attestation from the sub-wallet itself.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta

from proofpay.errors import (
    AlreadyLinked,
    AmbiguousIdentity,
    InvalidSignature,
    LimitExceeded,
    SelfLink,
    UnverifiedOwnership,
    ValidationError,
)
from proofpay.identity.signature import parse_link_message, recover_signer
from proofpay.storage.database import Database
from proofpay.storage.models import SignedAttestation, WalletLink, to_db_time, utcnow
from proofpay.wallet.addresses import normalize_address

logger = logging.getLogger("proofpay.identity.registry")

MAX_SUB_WALLETS = 2

# How old a signed link message may be, and how far ahead of our clock.
LINK_MESSAGE_MAX_AGE = timedelta(minutes=10)
LINK_MESSAGE_MAX_SKEW = timedelta(minutes=2)


def _row_to_link(row: dict) -> WalletLink:
    attestation = None
    if row.get("attestation_json"):
        attestation = SignedAttestation.model_validate_json(row["attestation_json"])
    return WalletLink(
        address=row["address"],
        label=row["label"],
        parent_address=row["parent_address"],
        is_primary=bool(row["is_primary"]),
        attestation=attestation,
        created_at=row["created_at"],
    )


class WalletLinkRegistry:
    """Persistent primary/sub-wallet relationships backed by :class:`Database`."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, address: str) -> WalletLink | None:
        """Return the link record for *address*, or ``None``."""
        row = await self.db.fetch_one(
            "SELECT * FROM wallet_links WHERE address = ?",
            (normalize_address(address),),
        )
        return _row_to_link(row) if row else None

    async def get_primary(self, address: str) -> WalletLink | None:
        """Resolve the primary wallet that *address* belongs to.

        Returns the record itself when *address* is a primary, climbs one
        level via ``parent_address`` when it is a sub-wallet, and returns
        ``None`` for an unknown address.

        Raises
        ------
        AmbiguousIdentity
            If a sub-wallet's parent is missing or is not itself a primary.
        """
        link = await self.get(address)
        if link is None:
            return None
        if link.is_primary:
            return link
        parent = await self.get(link.parent_address) if link.parent_address else None
        if parent is None or not parent.is_primary:
            raise AmbiguousIdentity(
                f"Wallet {link.address} points to parent {link.parent_address}, "
                "which is not a primary wallet."
            )
        return parent

    async def list_links(self, primary_address: str) -> list[WalletLink]:
        """Return the sub-wallets of *primary_address*, oldest first."""
        rows = await self.db.fetch_all(
            "SELECT * FROM wallet_links WHERE parent_address = ? AND is_primary = 0 "
            "ORDER BY created_at, address",
            (normalize_address(primary_address),),
        )
        return [_row_to_link(r) for r in rows]

    async def count_links(self, primary_address: str) -> int:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM wallet_links WHERE parent_address = ?",
            (normalize_address(primary_address),),
        )
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_link(
        self,
        primary_address: str,
        sub_address: str,
        label: str,
        attestation: SignedAttestation,
    ) -> WalletLink:
        """Link *sub_address* under *primary_address*.

        Raises
        ------
        SelfLink
            If both addresses are the same.
        UnverifiedOwnership
            If the signer recovered from the attestation is not
            *sub_address*, or the signed text is not a recent link message
            naming both wallets.
        AlreadyLinked
            If *sub_address* already has a link record.
        LimitExceeded
            If the primary already has :data:`MAX_SUB_WALLETS` sub-wallets.
        """
        primary = normalize_address(primary_address)
        sub = normalize_address(sub_address)

        if sub == primary:
            raise SelfLink("A wallet cannot be linked to itself.")
        attestation = self._verify_attestation(primary, sub, attestation)

        parent = await self.get(primary)
        if parent is None or not parent.is_primary:
            raise ValidationError(f"{primary} is not a primary wallet.")
        if await self.get(sub) is not None:
            raise AlreadyLinked(f"Wallet {sub} is already linked.")

        link = WalletLink(
            address=sub,
            label=label.strip(),
            parent_address=primary,
            is_primary=False,
            attestation=attestation,
        )
        # Count check and insert in one statement so concurrent adds cannot
        # push a primary past the cap.
        try:
            cursor = await self.db.execute(
                "INSERT INTO wallet_links "
                "(address, label, parent_address, is_primary, attestation_json, created_at) "
                "SELECT ?, ?, ?, 0, ?, ? "
                "WHERE (SELECT COUNT(*) FROM wallet_links WHERE parent_address = ?) < ?",
                (
                    link.address,
                    link.label,
                    link.parent_address,
                    attestation.model_dump_json(),
                    to_db_time(link.created_at),
                    primary,
                    MAX_SUB_WALLETS,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise AlreadyLinked(f"Wallet {sub} is already linked.") from exc

        if cursor.rowcount != 1:
            raise LimitExceeded(
                f"Wallet {primary} already has {MAX_SUB_WALLETS} sub-wallets."
            )
        logger.info(f"Linked sub-wallet {sub} to {primary}")
        return link

    @staticmethod
    def _verify_attestation(
        primary: str, sub: str, attestation: SignedAttestation
    ) -> SignedAttestation:
        """Recover the signer ourselves; the attestation's own fields are not trusted."""
        try:
            signer = recover_signer(attestation.message, attestation.signature)
        except InvalidSignature as exc:
            raise UnverifiedOwnership(f"Signature for {sub} could not be verified: {exc}") from exc
        if signer != sub:
            raise UnverifiedOwnership(f"Signature was produced by {signer}, not by {sub}.")

        parsed = parse_link_message(attestation.message)
        if parsed is None:
            raise UnverifiedOwnership(f"Wallet {sub} did not sign a link message.")
        signed_sub, signed_primary, signed_at = parsed
        if signed_sub != sub or signed_primary != primary:
            raise UnverifiedOwnership(
                f"Signed message links {signed_sub} to {signed_primary}, "
                f"not {sub} to {primary}."
            )
        now = utcnow()
        if signed_at < now - LINK_MESSAGE_MAX_AGE or signed_at > now + LINK_MESSAGE_MAX_SKEW:
            raise UnverifiedOwnership(
                f"Link message for {sub} is timestamped {signed_at.isoformat()}; sign a fresh one."
            )
        return attestation.model_copy(update={"subject_address": sub, "signer_address": signer})

    async def remove_link(self, address: str) -> bool:
        """Remove a sub-wallet link. Idempotent.

        Returns ``True`` if a record was deleted. Primary wallets are never
        removed here; use :meth:`reset_identity`.
        """
        cursor = await self.db.execute(
            "DELETE FROM wallet_links WHERE address = ? AND is_primary = 0",
            (normalize_address(address),),
        )
        removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Removed sub-wallet {normalize_address(address)}")
        return removed

    async def promote_to_primary(self, address: str, label: str = "Main Wallet") -> WalletLink:
        """Register a never-seen *address* as a primary wallet.

        Calling this for an address that is already a primary returns the
        existing record. An address that is already a sub-wallet is never
        promoted.
        """
        addr = normalize_address(address)
        now = utcnow()
        await self.db.execute(
            "INSERT OR IGNORE INTO wallet_links "
            "(address, label, parent_address, is_primary, attestation_json, created_at) "
            "VALUES (?, ?, NULL, 1, NULL, ?)",
            (addr, label, to_db_time(now)),
        )
        link = await self.get(addr)
        if link is None:
            raise AmbiguousIdentity(f"Wallet {addr} vanished while being registered.")
        if not link.is_primary:
            raise AlreadyLinked(
                f"Wallet {addr} is a sub-wallet of {link.parent_address}; "
                "it cannot become a primary."
            )
        return link

    async def reset_identity(self, primary_address: str) -> int:
        """Delete a primary wallet and all of its sub-wallets.

        Returns the number of records removed.
        """
        primary = normalize_address(primary_address)
        subs = await self.db.execute(
            "DELETE FROM wallet_links WHERE parent_address = ?", (primary,)
        )
        main = await self.db.execute(
            "DELETE FROM wallet_links WHERE address = ? AND is_primary = 1", (primary,)
        )
        total = max(subs.rowcount, 0) + max(main.rowcount, 0)
        if total:
            logger.info(f"Reset identity {primary} ({total} wallet records removed)")
        return total

    async def set_label(self, address: str, label: str) -> bool:
        cursor = await self.db.execute(
            "UPDATE wallet_links SET label = ? WHERE address = ?",
            (label.strip(), normalize_address(address)),
        )
        return cursor.rowcount == 1
