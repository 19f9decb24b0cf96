"""Wallet identity: ownership links, the active session and wallet switching."""
