"""ProofPay -- verifiable wallet identities and self-settling crypto payment requests."""

__version__ = "0.3.0"
