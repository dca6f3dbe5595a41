"""
Secure gateway for outbound banking API calls.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from shared.config import SecuritySettings
from shared.errors import (
    CSRFTokenMissing,
    HttpError,
    InvalidJSON,
    OriginNotAllowed,
    RateLimitExceeded,
    ResponseTooLarge,
    csrf_error_for,
)
from shared.logging import get_logger, set_session_context
from shared.metrics import MetricsCollector
from ..csp.composer import PolicyComposer
from ..csrf.token_manager import SAFE_METHODS, BankingRequest, TokenManager
from ..events import Severity, ViolationLog, ViolationType
from ..ratelimit.sliding_window import RateLimiter
from ..sanitizer.threat_sanitizer import ThreatSanitizer

AUTH_PATH_MARKERS = ("auth", "login")
TRANSFER_PATH_MARKERS = ("transfer", "payment")


@dataclass
class GatewayResponse:
    status_code: int
    headers: httpx.Headers
    data: Any
    banking_risk: str = "low"


class SecureGateway:
    """Runs every call through rate limiting, origin and CSRF checks and sanitization."""

    def __init__(
        self,
        settings: SecuritySettings,
        token_manager: TokenManager,
        sanitizer: ThreatSanitizer,
        rate_limiter: RateLimiter,
        policy_composer: PolicyComposer,
        violation_log: Optional[ViolationLog] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = "",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings
        self.token_manager = token_manager
        self.sanitizer = sanitizer
        self.rate_limiter = rate_limiter
        self.policy_composer = policy_composer
        self.violation_log = violation_log
        self.metrics = metrics
        self.logger = get_logger("security.gateway")

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.request_timeout_seconds,
        )

    async def __aenter__(self) -> "SecureGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if the gateway created it."""
        if self._owns_client:
            await self.client.aclose()

    @staticmethod
    def route_class_for(path: str) -> str:
        lowered = path.lower()
        if any(marker in lowered for marker in AUTH_PATH_MARKERS):
            return "auth"
        if any(marker in lowered for marker in TRANSFER_PATH_MARKERS):
            return "transfer"
        return "general"

    @staticmethod
    def rate_limit_key(route_class: str, session_id: Optional[str] = None, origin: Optional[str] = None) -> str:
        """Rate limiter identifier for a caller and route class."""
        identifier = session_id or origin or "anonymous"
        return f"{route_class}:{identifier}"

    def issue_csrf_token(self, session_id: str):
        return self.token_manager.get_or_create_token(session_id)

    def end_session(self, session_id: str) -> int:
        """Revoke every CSRF token held by a session."""
        return self.token_manager.invalidate_session_tokens(session_id)

    def policy_headers(self) -> Dict[str, str]:
        return self.policy_composer.all_headers()

    def _record(self, violation_type: ViolationType, severity: Severity, description: str,
                details: Dict[str, Any]) -> None:
        if self.violation_log is not None:
            self.violation_log.record(violation_type, severity, description, source="gateway", details=details)

    async def request(
        self,
        method: str,
        path: str,
        *,
        session_id: Optional[str] = None,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        csrf_token: Optional[str] = None,
        origin: Optional[str] = None,
        referer: Optional[str] = None,
        route_class: Optional[str] = None,
        amount: Optional[float] = None,
        account_number: Optional[str] = None,
    ) -> GatewayResponse:
        """Send a request through the security pipeline."""
        method = method.upper()
        request_headers = httpx.Headers(headers or {})
        request_origin = origin or self.settings.client_origin
        set_session_context(session_id)

        # 1. Admission control. Counted before anything else and never rolled back.
        route_class = route_class or self.route_class_for(path)
        key = self.rate_limit_key(route_class, session_id, request_origin)
        if not self.rate_limiter.is_allowed(key, self.settings.rate_limit_for(route_class)):
            raise RateLimitExceeded(details={
                "route_class": route_class,
                "blocked_until": self.rate_limiter.blocked_until_ms(key),
            })

        # 2. Origin allow-list.
        allowed_origins = self.settings.allowed_origins
        if allowed_origins and request_origin not in allowed_origins:
            self._record(ViolationType.GENERAL, Severity.HIGH, "Origin not allowed", {"origin": request_origin})
            raise OriginNotAllowed(details={"origin": request_origin})

        # 3. CSRF for state-changing calls. The token is attached whenever one
        # exists; csrf_required makes a missing or invalid one fatal.
        banking_risk = "low"
        token = None
        if method not in SAFE_METHODS:
            token = self._resolve_csrf_token(csrf_token, request_headers, session_id)

        if method not in SAFE_METHODS and self.settings.csrf_required:
            if not token:
                self._record(ViolationType.CSRF, Severity.HIGH, "CSRF token missing", {"path": path})
                raise CSRFTokenMissing(details={"path": path})

            if isinstance(json, Mapping):
                if amount is None and isinstance(json.get("amount"), (int, float)):
                    amount = json["amount"]
                if account_number is None and isinstance(json.get("account_number"), str):
                    account_number = json["account_number"]

            result = self.token_manager.validate_banking_request(
                token,
                session_id or "",
                BankingRequest(
                    method=method,
                    path=path,
                    amount=amount,
                    account_number=account_number,
                    origin=request_origin,
                    referer=referer,
                ),
            )
            banking_risk = result.banking_risk
            if not result.is_valid:
                self._record(
                    ViolationType.CSRF,
                    Severity.CRITICAL if banking_risk == "critical" else Severity.HIGH,
                    "CSRF validation failed",
                    {"path": path, "errors": result.errors, "banking_risk": banking_risk},
                )
                raise csrf_error_for(result.errors[0], details={"errors": result.errors})

            self.logger.info(
                "Banking request checked",
                method=method,
                path=path,
                banking_risk=banking_risk,
                additional_checks=result.additional_checks,
                warnings=result.warnings,
            )

        if token:
            request_headers[self.settings.csrf_header_name] = token

        # 4. Outbound sanitization.
        body = self.sanitizer.sanitize_payload(json) if json is not None else None
        query = self.sanitizer.sanitize_payload(dict(params)) if params else None

        # 5. Network call.
        started = time.perf_counter()
        try:
            response = await self.client.request(
                method,
                path,
                json=body,
                params=query,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            self._observe(method, "transport_error", started)
            self.logger.error("Gateway transport error", method=method, path=path, error=str(e))
            raise
        self._observe(method, "ok" if response.is_success else "http_error", started)

        # 6. Response validation.
        data = self._validate_response(response, path)

        return GatewayResponse(
            status_code=response.status_code,
            headers=response.headers,
            data=data,
            banking_risk=banking_risk,
        )

    def _resolve_csrf_token(
        self,
        explicit: Optional[str],
        headers: httpx.Headers,
        session_id: Optional[str],
    ) -> Optional[str]:
        if explicit:
            return explicit
        header_token = headers.get(self.settings.csrf_header_name)
        if header_token:
            return header_token
        if session_id:
            current = self.token_manager.current_token(session_id)
            if current is not None:
                return current.token
            if self.settings.csrf_auto_issue:
                return self.token_manager.generate_token(session_id).token
        return None

    def _observe(self, method: str, outcome: str, started: float) -> None:
        if self.metrics:
            self.metrics.record_gateway_call(method, outcome, time.perf_counter() - started)

    def _validate_response(self, response: httpx.Response, path: str) -> Any:
        if not response.is_success:
            raise HttpError(response.status_code, response.reason_phrase or "Upstream request failed",
                            details={"path": path})

        limit = self.settings.max_response_bytes
        declared = response.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > limit:
            raise ResponseTooLarge(details={"content_length": int(declared), "limit": limit})
        if len(response.content) > limit:
            raise ResponseTooLarge(details={"content_length": len(response.content), "limit": limit})

        missing = [name for name in self.settings.expected_response_headers if name not in response.headers]
        if missing:
            self.logger.warning("Response missing security headers", path=path, missing=missing)

        # 7. Inbound sanitization.
        content_type = response.headers.get("content-type", "").lower()
        if "json" not in content_type:
            return response.text
        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidJSON(details={"path": path, "error": str(e)})
        return self.sanitizer.sanitize_payload(payload)

    async def get(self, path: str, **kwargs) -> GatewayResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> GatewayResponse:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs) -> GatewayResponse:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> GatewayResponse:
        return await self.request("DELETE", path, **kwargs)
