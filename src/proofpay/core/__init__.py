"""Application wiring, domain events and retry helpers."""
