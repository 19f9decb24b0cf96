"""Signature recovery and attestation messages.

:func:`recover_signer` only answers "who signed this?". Comparing the answer
with an expected address is left to callers, so the same function serves both
the wallet-linking and the invoice-signing flows.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from eth_account import Account
from eth_account.messages import encode_defunct

from proofpay.errors import InvalidSignature
from proofpay.storage.models import SignedAttestation, as_utc, utcnow
from proofpay.wallet.addresses import normalize_address

logger = logging.getLogger("proofpay.identity.signature")

_LINK_MESSAGE_RE = re.compile(
    r"^ProofPay verification: I prove that I own address (0x[0-9a-f]{40}), "
    r"and add it to my account (0x[0-9a-f]{40})\nTimestamp: (\S+)$"
)


def _signature_bytes(signature: bytes | str) -> bytes:
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    if not isinstance(signature, str):
        raise InvalidSignature(f"Unsupported signature type {type(signature).__name__}")
    text = signature.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise InvalidSignature("Signature is not valid hex") from exc


def recover_signer(message: str, signature: bytes | str) -> str:
    """Recover the lowercase address that produced an EIP-191 ``personal_sign``.

    Raises
    ------
    InvalidSignature
        If the signature cannot be parsed or recovery fails.
    """
    raw = _signature_bytes(signature)
    if len(raw) != 65:
        raise InvalidSignature(f"Signature must be 65 bytes, got {len(raw)}")
    try:
        signer = Account.recover_message(encode_defunct(text=message), signature=raw)
    except Exception as exc:
        raise InvalidSignature(f"Could not recover signer: {exc}") from exc
    return signer.lower()


def sign_text(message: str, private_key: bytes | str) -> str:
    """Sign *message* the way wallets do for ``personal_sign``; returns 0x-hex."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def attest(message: str, signature: bytes | str, subject_address: str) -> SignedAttestation:
    """Build an attestation, recovering the signer from *signature*.

    A signature that cannot be recovered yields an attestation with
    ``signer_address=None`` so that callers reject it through their normal
    ownership check.
    """
    try:
        signer = recover_signer(message, signature)
    except InvalidSignature as exc:
        logger.info(f"Attestation for {subject_address} has an unrecoverable signature: {exc}")
        signer = None
    sig_text = signature if isinstance(signature, str) else "0x" + bytes(signature).hex()
    return SignedAttestation(
        message=message,
        signature=sig_text,
        subject_address=subject_address,
        signer_address=signer,
    )


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def build_link_message(
    primary_address: str,
    sub_address: str,
    timestamp: datetime | None = None,
) -> str:
    """Message a sub-wallet signs to join the primary wallet's identity."""
    ts = as_utc(timestamp or utcnow()).isoformat(timespec="milliseconds")
    return (
        f"ProofPay verification: I prove that I own address {normalize_address(sub_address)}, "
        f"and add it to my account {normalize_address(primary_address)}\n"
        f"Timestamp: {ts}"
    )


def parse_link_message(message: str) -> tuple[str, str, datetime] | None:
    """Split a :func:`build_link_message` text into ``(sub, primary, timestamp)``.

    Returns ``None`` for any other text.
    """
    match = _LINK_MESSAGE_RE.match(message)
    if match is None:
        return None
    try:
        timestamp = as_utc(datetime.fromisoformat(match.group(3)))
    except ValueError:
        return None
    return match.group(1), match.group(2), timestamp


def build_receipt_message(
    wallet_address: str,
    amount: str,
    token: str,
    from_address: str,
    date: str,
    tx_hash: str,
) -> str:
    """Message the receiving wallet signs to confirm a payment on an invoice."""
    return (
        f"I confirm that I, the owner of wallet {wallet_address}, received a payment of "
        f"{amount} {token} from {from_address} on {date} (tx hash: {tx_hash}).\n"
        f"Signed via ProofPay."
    )


def format_signature(signature: str) -> str:
    """Shortened signature for display: first and last 10 characters."""
    if not signature:
        return ""
    return f"{signature[:10]}...{signature[-10:]}"
