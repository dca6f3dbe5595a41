"""
CSRF token manager for the security service.
"""

import base64
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import SplitResult, urlsplit

from shared.config import SecuritySettings
from shared.logging import get_logger
from shared.metrics import MetricsCollector

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{3,4}-\d{2,6}-\d{6,8}$")

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class IssuedToken:
    """A token handed to a session."""
    token: str
    session_id: str
    issued_at: int
    expires_at: int


@dataclass
class RequestContext:
    """Request attributes considered during token validation."""
    method: str = "POST"
    origin: Optional[str] = None
    referer: Optional[str] = None


@dataclass
class BankingRequest:
    """A state-changing banking call awaiting CSRF and risk checks."""
    method: str
    path: str
    amount: Optional[float] = None
    account_number: Optional[str] = None
    origin: Optional[str] = None
    referer: Optional[str] = None


@dataclass
class TokenValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    expires_at: Optional[int] = None


@dataclass
class BankingValidationResult(TokenValidationResult):
    banking_risk: str = "low"
    additional_checks: List[str] = field(default_factory=list)


class TokenManager:
    """Issues and validates session-bound CSRF tokens."""

    def __init__(
        self,
        settings: SecuritySettings,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.metrics = metrics
        self.logger = get_logger("security.csrf")
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, IssuedToken] = {}
        self._current: Dict[str, str] = {}  # session_id -> latest token

        if settings.csrf_secret is not None:
            self._secret = settings.csrf_secret.get_secret_value().encode("utf-8")
        else:
            self._secret = secrets.token_bytes(32)
            self.logger.warning("No CSRF secret configured, generated a per-process secret")

    @property
    def lifetime_ms(self) -> int:
        return self.settings.token_lifetime_ms

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _sign(self, encoded_payload: str) -> str:
        return hmac.new(self._secret, encoded_payload.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def _encode_payload(payload: Dict[str, Any]) -> str:
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    @staticmethod
    def _decode_payload(encoded_payload: str) -> Optional[Dict[str, Any]]:
        """Read a payload without verifying it."""
        padding = "=" * (-len(encoded_payload) % 4)
        try:
            raw = base64.urlsafe_b64decode(encoded_payload + padding)
            payload = json.loads(raw.decode("utf-8"))
        except ValueError:
            return None

        if not isinstance(payload, dict):
            return None
        if not isinstance(payload.get("sid"), str):
            return None
        if not isinstance(payload.get("iat"), int) or not isinstance(payload.get("exp"), int):
            return None
        return payload

    @staticmethod
    def _split(token: str) -> Optional[Tuple[str, str]]:
        encoded_payload, sep, signature = token.rpartition(".")
        if not sep or not encoded_payload or not signature:
            return None
        return encoded_payload, signature

    def _prune_locked(self, now: int) -> int:
        expired = [value for value, record in self._tokens.items() if record.expires_at <= now]
        for value in expired:
            record = self._tokens.pop(value)
            if self._current.get(record.session_id) == value:
                del self._current[record.session_id]
        return len(expired)

    def generate_token(self, session_id: str) -> IssuedToken:
        """Issue a new signed token for a session."""
        now = self._now_ms()
        payload = {
            "sid": session_id,
            "iat": now,
            "exp": now + self.lifetime_ms,
            "nonce": secrets.token_hex(16),
        }
        encoded_payload = self._encode_payload(payload)
        token = f"{encoded_payload}.{self._sign(encoded_payload)}"
        issued = IssuedToken(
            token=token,
            session_id=session_id,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )

        with self._lock:
            self._prune_locked(now)
            self._tokens[token] = issued
            self._current[session_id] = token

        self.logger.info("CSRF token issued", session_id=session_id, expires_at=issued.expires_at)
        return issued

    def get_or_create_token(self, session_id: str) -> IssuedToken:
        """Return the session's live token, issuing one when absent or expired."""
        now = self._now_ms()
        with self._lock:
            current = self._current.get(session_id)
            record = self._tokens.get(current) if current else None
            if record is not None and record.expires_at > now:
                return record
        return self.generate_token(session_id)

    def current_token(self, session_id: str) -> Optional[IssuedToken]:
        """The session's live token, if any. Never issues."""
        now = self._now_ms()
        with self._lock:
            current = self._current.get(session_id)
            record = self._tokens.get(current) if current else None
        if record is None or record.expires_at <= now:
            return None
        return record

    def validate_token(
        self,
        token: Any,
        session_id: str,
        context: Optional[RequestContext] = None,
    ) -> TokenValidationResult:
        """Validate a token presented by a session. Never mutates the store."""
        context = context or RequestContext()
        if context.method.upper() in SAFE_METHODS:
            return TokenValidationResult(is_valid=True)

        result = self._check_token(token, session_id, context)
        self._record_outcome(result)
        return result

    def _check_token(self, token: Any, session_id: str, context: RequestContext) -> TokenValidationResult:
        if not isinstance(token, str) or not token:
            return TokenValidationResult(is_valid=False, errors=["CSRFTokenMissing"])

        now = self._now_ms()
        parts = self._split(token)
        if parts is None:
            return TokenValidationResult(is_valid=False, errors=["SignatureMismatch"])

        encoded_payload, signature = parts
        payload = self._decode_payload(encoded_payload)
        expected = self._sign(encoded_payload)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")) or payload is None:
            errors = ["SignatureMismatch"]
            if payload is not None and payload["exp"] <= now:
                errors.append("TokenExpired")
            return TokenValidationResult(is_valid=False, errors=errors)

        result = TokenValidationResult(is_valid=True, expires_at=payload["exp"])

        if not hmac.compare_digest(payload["sid"].encode("utf-8"), session_id.encode("utf-8")):
            result.errors.append("TokenSessionMismatch")

        if payload["exp"] <= now:
            result.errors.append("TokenExpired")
        else:
            with self._lock:
                live = token in self._tokens
            if not live:
                result.errors.append("TokenRevoked")

        if context.origin and not self._is_trusted(context.origin):
            if self.settings.profile.strict_origin_validation:
                result.errors.append("InvalidOrigin")
            else:
                result.warnings.append("UntrustedOrigin")

        if context.referer and not self._is_trusted(context.referer):
            result.warnings.append("UntrustedReferer")

        result.is_valid = not result.errors
        return result

    def _record_outcome(self, result: TokenValidationResult) -> None:
        outcome = "valid" if result.is_valid else result.errors[0]
        if not result.is_valid:
            self.logger.warning("CSRF validation failed", errors=result.errors)
        if self.metrics:
            self.metrics.record_csrf_validation(outcome)

    def _is_trusted(self, url: str) -> bool:
        """Whether a URL's origin equals, or is a sub-domain of, a trusted origin."""
        try:
            candidate = urlsplit(url)
            port = _origin_port(candidate)
        except ValueError:
            return False
        host = (candidate.hostname or "").lower()
        if not host:
            return False
        if self.settings.is_production and candidate.scheme != "https":
            return False

        for trusted in self.settings.trusted_origins:
            try:
                trusted_parts = urlsplit(trusted)
                trusted_port = _origin_port(trusted_parts)
            except ValueError:
                continue
            trusted_host = (trusted_parts.hostname or "").lower()
            if not trusted_host or port != trusted_port:
                continue
            if host == trusted_host or host.endswith("." + trusted_host):
                return True
        return False

    def validate_banking_request(
        self,
        token: Any,
        session_id: str,
        request: BankingRequest,
    ) -> BankingValidationResult:
        """Validate a token and classify the risk of a banking call."""
        base = self.validate_token(
            token,
            session_id,
            RequestContext(method=request.method, origin=request.origin, referer=request.referer),
        )
        result = BankingValidationResult(
            is_valid=base.is_valid,
            errors=list(base.errors),
            warnings=list(base.warnings),
            expires_at=base.expires_at,
        )

        path = request.path.lower()
        if any(segment in path for segment in self.settings.high_risk_paths):
            result.banking_risk = "high"
            result.additional_checks.append("high_risk_path")

        if request.amount is not None and request.amount > self.settings.large_transaction_threshold:
            result.banking_risk = "critical"
            result.additional_checks.append("large_transaction")

        if request.account_number is not None and not ACCOUNT_NUMBER_PATTERN.match(request.account_number):
            result.warnings.append("InvalidAccountNumber")
            result.additional_checks.append("account_number_format")

        if result.banking_risk != "low":
            self.logger.info(
                "Banking request risk assessed",
                path=request.path,
                banking_risk=result.banking_risk,
                additional_checks=result.additional_checks,
            )
        return result

    def invalidate_token(self, token: str) -> bool:
        """Revoke a single token."""
        with self._lock:
            record = self._tokens.pop(token, None)
            if record is None:
                return False
            if self._current.get(record.session_id) == token:
                del self._current[record.session_id]

        self.logger.info("CSRF token invalidated", session_id=record.session_id)
        return True

    def invalidate_session_tokens(self, session_id: str) -> int:
        """Revoke every token issued to a session."""
        with self._lock:
            doomed = [value for value, record in self._tokens.items() if record.session_id == session_id]
            for value in doomed:
                del self._tokens[value]
            self._current.pop(session_id, None)

        self.logger.info("CSRF session tokens invalidated", session_id=session_id, count=len(doomed))
        return len(doomed)

    def prune_expired(self) -> int:
        """Drop expired tokens from the store."""
        with self._lock:
            return self._prune_locked(self._now_ms())

    def build_cookie_header(self, token: str, expires_at: int) -> str:
        """Set-Cookie value persisting a token until its expiry."""
        max_age = max(0, (expires_at - self._now_ms()) // 1000)
        parts = [
            f"{self.settings.csrf_cookie_name}={token}",
            f"Expires={formatdate(expires_at / 1000, usegmt=True)}",
            f"Max-Age={max_age}",
            f"SameSite={self.settings.csrf_same_site}",
            "Path=/",
        ]
        if self.settings.csrf_http_only:
            parts.append("HttpOnly")
        if self.settings.csrf_secure:
            parts.append("Secure")
        return "; ".join(parts)

    def get_protection_status(self) -> Dict[str, Any]:
        now = self._now_ms()
        with self._lock:
            active = sum(1 for record in self._tokens.values() if record.expires_at > now)
            total = len(self._tokens)
            sessions = len(self._current)

        return {
            "active_tokens": active,
            "expired_tokens": total - active,
            "sessions": sessions,
            "token_lifetime_ms": self.lifetime_ms,
            "header_name": self.settings.csrf_header_name,
            "cookie": {
                "name": self.settings.csrf_cookie_name,
                "same_site": self.settings.csrf_same_site,
                "http_only": self.settings.csrf_http_only,
                "secure": self.settings.csrf_secure,
            },
        }


def _origin_port(parts: SplitResult) -> Optional[int]:
    """Explicit non-default port, else None. Raises ValueError for malformed ports."""
    port = parts.port
    if port == DEFAULT_PORTS.get(parts.scheme):
        return None
    return port
