"""
Security service for the request security layer.
"""

import time
from typing import Callable, Dict, Optional

from fastapi import Header, Query, Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import SecuritySettings
from shared.errors import ValidationError
from .csp.composer import PolicyComposer
from .csrf.token_manager import TokenManager
from .events import ViolationLog, ViolationType
from .ratelimit.sliding_window import RateLimiter
from .sanitizer.threat_sanitizer import ThreatSanitizer


class SecurityService(BaseService):
    """Hosts the security engines behind a small HTTP surface."""

    def __init__(self, settings: Optional[SecuritySettings] = None, clock: Callable[[], float] = time.time):
        super().__init__("security", settings)

        self.violation_log = ViolationLog(
            capacity=self.config.violation_log_capacity,
            metrics=self.metrics,
            clock=clock,
        )
        self.token_manager = TokenManager(self.config, metrics=self.metrics, clock=clock)
        self.sanitizer = ThreatSanitizer(self.config, violation_log=self.violation_log, metrics=self.metrics)
        self.rate_limiter = RateLimiter(violation_log=self.violation_log, metrics=self.metrics, clock=clock)
        self.policy_composer = PolicyComposer(self.config, violation_log=self.violation_log)

        # Fail fast on a policy that cannot be composed.
        self.policy_composer.compose()

        self._setup_security_middleware()
        self._setup_security_routes()

    async def _check_dependencies(self) -> Dict[str, str]:
        policy_check = self.policy_composer.validate()
        return {
            "csp_policy": "ok" if policy_check.passed else "invalid",
            "csrf_secret": "configured" if self.config.csrf_secret is not None else "ephemeral",
        }

    def _setup_security_middleware(self):
        """Attach the policy and companion headers to every response."""

        @self.app.middleware("http")
        async def apply_security_headers(request: Request, call_next):
            nonce = self.policy_composer.refresh_nonce()
            request.state.csp_nonce = nonce
            # Resolved before the handler runs; other requests refresh the nonce meanwhile.
            headers = self.policy_composer.all_headers(nonce=nonce)
            response = await call_next(request)
            for name, value in headers.items():
                response.headers[name] = value
            return response

    def _setup_security_routes(self):
        """Set up security-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "security",
                "message": "Request Security Layer - Security Service",
                "version": "1.0.0"
            }

        @self.app.get("/api/security/csrf-token")
        async def csrf_token(x_session_id: Optional[str] = Header(default=None)):
            """Issue or return the session's CSRF token and persist it in a cookie."""
            if not x_session_id:
                raise ValidationError("X-Session-ID header is required")

            issued = self.token_manager.get_or_create_token(x_session_id)
            response = JSONResponse(
                content={
                    "token": issued.token,
                    "expires_at": issued.expires_at,
                    "header_name": self.config.csrf_header_name,
                }
            )
            response.headers["Set-Cookie"] = self.token_manager.build_cookie_header(issued.token, issued.expires_at)
            response.headers["Cache-Control"] = "no-store"
            return response

        @self.app.get("/api/security/violations")
        async def violations(
            limit: int = Query(default=50, ge=1, le=1000),
            violation_type: Optional[ViolationType] = Query(default=None, alias="type"),
        ):
            """Most recent security violations."""
            events = self.violation_log.recent(limit=limit, violation_type=violation_type)
            return {
                "count": len(events),
                "violations": [event.model_dump(mode="json") for event in events],
            }

        @self.app.post("/api/security/csp-violations", status_code=204)
        async def csp_violation_report(request: Request):
            """Accept a browser CSP violation report."""
            try:
                payload = await request.json()
            except ValueError:
                raise ValidationError("CSP report body must be JSON")

            self.policy_composer.handle_violation_report(payload)
            return Response(status_code=204)

        @self.app.get("/api/security/status")
        async def security_status():
            """Engine state summary."""
            policy_check = self.policy_composer.validate()
            return {
                "environment": self.config.environment,
                "security_level": self.config.security_level,
                "csrf": self.token_manager.get_protection_status(),
                "rate_limiter": self.rate_limiter.get_stats(),
                "violations": self.violation_log.counts_by_type(),
                "csp": {
                    "header_name": self.policy_composer.header_name(),
                    "passed": policy_check.passed,
                    "errors": policy_check.errors,
                    "warnings": policy_check.warnings,
                },
            }


def create_app():
    """Create FastAPI application."""
    service = SecurityService()
    return service.app


if __name__ == "__main__":
    service = SecurityService()
    service.run()
