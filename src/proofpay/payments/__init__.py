"""Payment requests, settlement detection, expiry and invoices."""
