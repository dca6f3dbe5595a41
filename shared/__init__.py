"""
Shared utilities for the request security layer.

This package aggregates common building blocks consumed by the security
engines and their host service:

- config: Security settings via pydantic-settings, with security-level presets
- logging: Structured logging with request/session correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and blocking responses
- base_service: FastAPI base class with health, metrics and error mapping

Do not import from service_* packages into shared/.
"""
