"""Exception hierarchy for ProofPay.

Errors are grouped by how callers are expected to react:

* :class:`ValidationError` -- bad input, reported synchronously, never retried.
* :class:`OwnershipError` -- a signature does not prove what it claims; the
  flow restarts from message generation.
* :class:`ProviderError` -- the external wallet provider refused or failed;
  recoverable by restoring the previous session.
* :class:`ChainDataError` -- chain RPC trouble; retried with backoff and never
  taken as evidence for a status change.
"""

from __future__ import annotations


class ProofPayError(Exception):
    """Base class for every error raised by ProofPay."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(ProofPayError, ValueError):
    """Input rejected before any state was touched."""


class InvalidAmount(ValidationError):
    pass


class LimitExceeded(ValidationError):
    """The primary wallet already has the maximum number of sub-wallets."""


class AlreadyLinked(ValidationError):
    """The address already has a link record."""


class SelfLink(ValidationError):
    """A wallet cannot be linked to itself."""


class NotLinked(ValidationError):
    """The address is not part of the current identity."""


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------

class OwnershipError(ProofPayError):
    pass


class InvalidSignature(OwnershipError):
    """The signature could not be parsed or no signer could be recovered."""


class UnverifiedOwnership(OwnershipError):
    """The recovered signer is not the address being vouched for."""


class AmbiguousIdentity(ProofPayError):
    """Stored link records contradict each other.

    Raised instead of guessing whether an address is a primary or a
    sub-wallet.
    """


# ---------------------------------------------------------------------------
# Wallet provider / switching
# ---------------------------------------------------------------------------

class ProviderError(ProofPayError):
    """Base class for failures reported by the external wallet provider."""

    reason = "provider-error"


class UserRejected(ProviderError):
    reason = "rejected"


class AccountMismatch(ProviderError):
    reason = "mismatched"

    def __init__(self, expected: str, actual: str | None) -> None:
        super().__init__(f"Expected account {expected}, provider connected {actual}")
        self.expected = expected
        self.actual = actual


class ConnectorUnavailable(ProviderError):
    reason = "connector-unavailable"


class ProviderTimeout(ProviderError):
    reason = "timeout"


class AlreadySwitching(ProofPayError):
    """A wallet switch is already in flight."""


class RecoveryFailed(ProofPayError):
    """Restoring the previous wallet after a failed switch did not succeed."""


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class InvalidTransition(ProofPayError):
    """A status change that the payment request lifecycle does not allow."""

    def __init__(self, request_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Payment request {request_id} is '{current}', cannot move to '{target}'."
        )
        self.request_id = request_id
        self.current = current
        self.target = target


class RequestNotFound(ProofPayError, KeyError):
    def __init__(self, request_id: str) -> None:
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"Payment request {self.request_id} not found."


class InvoiceNotFound(ProofPayError, KeyError):
    def __init__(self, document_id: str) -> None:
        super().__init__(document_id)
        self.document_id = document_id

    def __str__(self) -> str:
        return f"Invoice {self.document_id} not found."


class ChainDataError(ProofPayError):
    """A chain RPC call failed or returned something unusable."""
