"""
Secure gateway package.

Sequences the security engines around every outbound call in a fixed
order: rate limit, origin, CSRF, outbound sanitization, network call,
response validation and inbound sanitization.
"""
