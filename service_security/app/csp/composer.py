"""
Content-Security-Policy composer for the security service.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from shared.config import SecuritySettings
from shared.errors import ConfigurationError, ValidationError
from shared.logging import get_logger
from ..events import Severity, ViolationLog, ViolationType
from .directives import (
    BOOLEAN_DIRECTIVES,
    DIRECTIVE_NAMES,
    NONE,
    REPORTING_DIRECTIVES,
    REQUIRED_DIRECTIVES,
    DirectiveSet,
    is_boolean,
)
from .presets import (
    BASE_POLICY,
    ENVIRONMENT_OVERLAYS,
    FEATURE_ORDER,
    FEATURE_OVERLAYS,
    HSTS_HEADER,
    SECURITY_HEADERS,
)

NONCE_DIRECTIVES = ("script-src", "style-src")
UNSAFE_SOURCES = ("'unsafe-eval'", "'unsafe-inline'")
CLICKJACKING_SAFE = {"'none'", "'self'"}


@dataclass
class PolicyValidationResult:
    passed: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class PolicyComposer:
    """Builds CSP directive sets and headers, and takes violation reports."""

    def __init__(self, settings: SecuritySettings, violation_log: Optional[ViolationLog] = None):
        self.settings = settings
        self.violation_log = violation_log
        self.logger = get_logger("security.csp")
        self._cache: Dict[Tuple[str, Tuple[str, ...]], DirectiveSet] = {}
        self._extra = DirectiveSet()
        self._nonce: Optional[str] = None

    def _features(self, features: Optional[Iterable[str]]) -> Tuple[str, ...]:
        requested = set(self.settings.features.enabled() if features is None else features)
        unknown = requested.difference(FEATURE_ORDER)
        if unknown:
            raise ConfigurationError("Unknown CSP feature", {"features": sorted(unknown)})
        return tuple(name for name in FEATURE_ORDER if name in requested)

    def compose(self, environment: Optional[str] = None, features: Optional[Iterable[str]] = None) -> DirectiveSet:
        """Directive set for an environment and feature combination, cached."""
        environment = environment or self.settings.environment
        if environment not in ENVIRONMENT_OVERLAYS:
            raise ConfigurationError("Unknown environment", {"environment": environment})

        key = (environment, self._features(features))
        if key not in self._cache:
            directives = DirectiveSet(BASE_POLICY)
            directives.merge(ENVIRONMENT_OVERLAYS[environment])
            for feature in key[1]:
                directives.merge(FEATURE_OVERLAYS[feature])

            missing = [name for name in REQUIRED_DIRECTIVES if name not in directives]
            if missing:
                raise ConfigurationError("Missing required CSP directives", {"missing": missing})

            self._cache[key] = directives
            self.logger.info("CSP composed", environment=environment, features=list(key[1]))

        return self._cache[key].copy()

    def get_nonce(self) -> str:
        if self._nonce is None:
            return self.refresh_nonce()
        return self._nonce

    def refresh_nonce(self) -> str:
        """Generate a fresh nonce for the next page load."""
        self._nonce = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
        return self._nonce

    def add_hash_source(self, content: str, directive: str = "script-src") -> str:
        """Allow a specific inline block by its SHA-256 hash."""
        digest = hashlib.sha256(content.encode("utf-8")).digest()
        source = f"'sha256-{base64.b64encode(digest).decode('ascii')}'"
        self._extra.add(directive, [source])
        return source

    def add_allowed_source(self, directive: str, source: str) -> None:
        self._extra.add(directive, [source])
        self.logger.info("CSP source added", directive=directive, source=source)

    def policy(
        self,
        environment: Optional[str] = None,
        features: Optional[Iterable[str]] = None,
        nonce: Optional[str] = None,
    ) -> DirectiveSet:
        """Composed directives with runtime sources and a nonce applied.

        An explicit nonce pins the policy to one response; otherwise the
        composer's current nonce is used.
        """
        directives = self.compose(environment, features)
        directives.merge(self._extra)
        return self._apply_nonce(directives, nonce)

    def _apply_nonce(self, directives: DirectiveSet, nonce: Optional[str] = None) -> DirectiveSet:
        if not self.settings.csp_enable_nonce:
            nonce = None
        elif nonce is None:
            nonce = self.get_nonce()
        resolved = DirectiveSet()

        for name, values in directives.items():
            if is_boolean(name):
                resolved.add(name)
                continue

            sources = []
            for value in values:
                if "{nonce}" in value:
                    if nonce is not None:
                        sources.append(value.replace("{nonce}", nonce))
                    continue
                sources.append(value)

            if nonce is not None and name in NONCE_DIRECTIVES:
                nonce_source = f"'nonce-{nonce}'"
                if nonce_source not in sources:
                    sources.append(nonce_source)

            resolved.add(name, sources or [NONE])
        return resolved

    def header_name(self) -> str:
        if self.settings.report_only:
            return "Content-Security-Policy-Report-Only"
        return "Content-Security-Policy"

    def generate_header(
        self,
        environment: Optional[str] = None,
        features: Optional[Iterable[str]] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """Serialize the policy as a header value."""
        parts = []
        for name, values in self.policy(environment, features, nonce).items():
            parts.append(" ".join([name, *values]) if values else name)

        if self.settings.csp_report_uri:
            parts.append(f"report-uri {self.settings.csp_report_uri}")
        if self.settings.csp_report_to:
            parts.append(f"report-to {self.settings.csp_report_to}")
        return "; ".join(parts)

    def security_headers(self) -> Dict[str, str]:
        """Companion headers sent alongside the policy."""
        headers = dict(SECURITY_HEADERS)
        if self.settings.is_production and self.settings.enable_hsts:
            headers["Strict-Transport-Security"] = HSTS_HEADER
        return headers

    def all_headers(
        self,
        environment: Optional[str] = None,
        features: Optional[Iterable[str]] = None,
        nonce: Optional[str] = None,
    ) -> Dict[str, str]:
        return {
            self.header_name(): self.generate_header(environment, features, nonce),
            **self.security_headers(),
        }

    def validate(
        self,
        policy: Optional[DirectiveSet] = None,
        strict: bool = False,
        environment: Optional[str] = None,
    ) -> PolicyValidationResult:
        """Check a directive set for missing directives and unsafe sources."""
        environment = environment or self.settings.environment
        if policy is None:
            policy = self.policy(environment)
        production = environment == "production"
        result = PolicyValidationResult(passed=True)

        for name in REQUIRED_DIRECTIVES:
            if name not in policy:
                result.errors.append(f"Missing required directive: {name}")

        if production:
            for name, values in policy.items():
                for unsafe in UNSAFE_SOURCES:
                    if unsafe in values:
                        message = f"{unsafe} in {name} is not allowed in production"
                        (result.errors if strict else result.warnings).append(message)

        for name, values in policy.items():
            if "*" in values:
                result.warnings.append(f"Wildcard source in {name}")

        frame_ancestors = policy.get("frame-ancestors")
        if not frame_ancestors or not set(frame_ancestors) <= CLICKJACKING_SAFE:
            message = "frame-ancestors should be 'none' or 'self' to prevent clickjacking"
            (result.errors if production else result.warnings).append(message)

        result.passed = not result.errors
        return result

    def validate_header_syntax(self, raw: str) -> PolicyValidationResult:
        """Check a raw header value for known names, quoting and values."""
        result = PolicyValidationResult(passed=True)
        seen = set()

        for chunk in raw.split(";"):
            tokens = chunk.split()
            if not tokens:
                continue
            name, values = tokens[0].lower(), tokens[1:]

            if name not in DIRECTIVE_NAMES and name not in REPORTING_DIRECTIVES:
                result.errors.append(f"Unknown directive: {name}")
                continue
            if name in seen:
                result.warnings.append(f"Duplicate directive: {name}")
            seen.add(name)

            if name in BOOLEAN_DIRECTIVES:
                if values:
                    result.warnings.append(f"Directive {name} takes no values")
            elif not values:
                result.errors.append(f"Directive {name} has no values")

            for value in values:
                if value.count("'") % 2:
                    result.errors.append(f"Unbalanced quotes in {name}: {value}")

        result.passed = not result.errors
        return result

    def handle_violation_report(self, payload: Mapping[str, Any]) -> List[str]:
        """Record a CSP violation report and suggest a remediation."""
        if not isinstance(payload, Mapping):
            raise ValidationError("CSP report must be an object")
        report = payload.get("csp-report", payload)
        if not isinstance(report, Mapping):
            raise ValidationError("CSP report must be an object")

        directive = str(
            report.get("violated-directive")
            or report.get("effective-directive")
            or report.get("violatedDirective")
            or report.get("effectiveDirective")
            or ""
        )
        directive = directive.split()[0] if directive.strip() else "unknown"
        blocked_uri = str(report.get("blocked-uri") or report.get("blockedURI") or "")
        document_uri = str(report.get("document-uri") or report.get("documentURI") or "")

        suggestions = self.suggest_fix(directive, blocked_uri)
        if self.violation_log is not None:
            self.violation_log.record(
                ViolationType.CSP,
                Severity.HIGH if directive.startswith("script-src") else Severity.MEDIUM,
                f"CSP violation: {directive}",
                source=document_uri or "csp-report",
                details={
                    "directive": directive,
                    "blocked_uri": blocked_uri,
                    "suggestions": suggestions,
                },
            )
        else:
            self.logger.warning("CSP violation", directive=directive, blocked_uri=blocked_uri)
        return suggestions

    @staticmethod
    def suggest_fix(directive: str, blocked_uri: str) -> List[str]:
        if directive == "script-src" and blocked_uri == "inline":
            return ["Use nonce or hash for inline scripts", "Move inline scripts to external files"]
        if directive == "style-src" and blocked_uri == "inline":
            return ["Use nonce or hash for inline styles", "Move inline styles to external CSS files"]
        if directive in ("script-src", "style-src", "font-src"):
            return [f"Add '{blocked_uri}' to {directive} directive"]
        if directive == "img-src":
            suggestions = [f"Add '{blocked_uri}' to img-src directive"]
            if blocked_uri.startswith("data:"):
                suggestions.append("Add 'data:' to img-src for base64 images")
            return suggestions
        if directive == "connect-src":
            return [f"Add '{blocked_uri}' to connect-src directive", "Check if this is a legitimate API endpoint"]
        if directive == "frame-src":
            return [f"Add '{blocked_uri}' to frame-src directive", "Verify if embedding this content is secure"]
        return [f"Review the {directive} directive", f"Consider adding '{blocked_uri}' if it's trusted"]
