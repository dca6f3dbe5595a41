"""
CSRF protection package.

Issues HMAC-signed, session-bound tokens, validates them for state-changing
requests (signature, session, expiry, revocation, origin) and applies the
banking risk checks used before transfers and payments.
"""
