"""
Input threat sanitizer for the security service.
"""

import html
import re
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import bleach

from shared.config import SecuritySettings
from shared.errors import ConfigurationError, SecurityThreatDetected
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..events import RISK_LEVELS, Severity, ViolationLog, ViolationType, max_risk
from .rules import DEFAULT_RULESET, RuleSet

ENTITY_MAP = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}

# An ampersand that does not already start a character reference.
_BARE_AMPERSAND = re.compile(r"&(?!(?:[a-zA-Z][a-zA-Z0-9]*|#\d+|#[xX][0-9a-fA-F]+);)")
_ESCAPABLE = re.compile(r"[<>\"'/`=]")
_SCRIPT_OR_STYLE = re.compile(r"<(script|style)[^>]*>[\s\S]*?</\1\s*>", re.IGNORECASE)

_STRICT_PATTERNS = (
    re.compile(r"[<>]"),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
)

DANGEROUS_URL_SCHEMES = ("javascript:", "vbscript:", "data:", "file:")

BANKING_FIELD_LIMITS = {
    "account": 50,
    "amount": 20,
    "memo": 200,
    "name": 100,
    "general": 1000,
}


@dataclass(frozen=True)
class SanitizeOptions:
    allow_html: bool = False
    max_length: int = 10000
    allowed_tags: Tuple[str, ...] = ("b", "i", "em", "strong", "p", "br")
    allowed_attributes: Tuple[str, ...] = ("class", "id")
    strict_mode: bool = True
    banking_mode: bool = True


@dataclass
class Finding:
    category: str
    occurrences: int


@dataclass
class ValidationResult:
    """Outcome of validating one input value."""
    is_valid: bool
    sanitized_value: str
    findings: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    risk_level: str = "low"
    original_length: int = 0
    sanitized_length: int = 0
    ruleset_version: str = DEFAULT_RULESET.version


@dataclass
class FormValidationResult:
    is_valid: bool
    sanitized_data: Dict[str, Any]
    field_results: Dict[str, ValidationResult]
    overall_risk: str


@dataclass
class UrlValidationResult:
    is_valid: bool
    sanitized_url: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def encode_entities(value: str) -> str:
    """HTML-encode special characters without re-encoding existing references."""
    value = _BARE_AMPERSAND.sub("&amp;", value)
    return _ESCAPABLE.sub(lambda match: ENTITY_MAP[match.group(0)], value)


def exceeds_length(value: str, max_length: int) -> bool:
    """Length check on the decoded text, so encoded output is not truncated again."""
    return len(value) > max_length and len(html.unescape(value)) > max_length


def strip_dangerous(value: str) -> str:
    """Remove brackets, dangerous protocols, event handlers and CSS expressions."""
    previous = None
    while previous != value:
        previous = value
        for pattern in _STRICT_PATTERNS:
            value = pattern.sub("", value)
    return value.strip()


class ThreatSanitizer:
    """Detects, scores and neutralises threats in user-supplied text."""

    def __init__(
        self,
        settings: SecuritySettings,
        violation_log: Optional[ViolationLog] = None,
        metrics: Optional[MetricsCollector] = None,
        ruleset: RuleSet = DEFAULT_RULESET,
    ):
        self.settings = settings
        self.violation_log = violation_log
        self.metrics = metrics
        self.ruleset = ruleset
        self.logger = get_logger("security.sanitizer")
        self.default_options = SanitizeOptions(
            max_length=settings.effective_max_input_length,
            allowed_tags=tuple(settings.allowed_tags),
            allowed_attributes=tuple(settings.allowed_attributes),
            strict_mode=settings.effective_strict_mode,
            banking_mode=settings.banking_mode,
        )

    def validate(self, value: Any, options: Optional[SanitizeOptions] = None) -> ValidationResult:
        """Validate, sanitize and risk-score a single value."""
        options = options or self.default_options

        if not isinstance(value, str):
            result = ValidationResult(
                is_valid=False,
                sanitized_value="",
                findings=[Finding("invalid_type", 1)],
                risk_level="medium",
                ruleset_version=self.ruleset.version,
            )
            self._report(result)
            return result

        candidate = value
        findings: List[Finding] = []
        if exceeds_length(candidate, options.max_length):
            candidate = candidate[:options.max_length]
            findings.append(Finding("max_length_exceeded", 1))

        for rule in self.ruleset.hard:
            occurrences = rule.count(candidate)
            if occurrences:
                findings.append(Finding(rule.category, occurrences))

        warnings: List[Finding] = []
        if options.banking_mode:
            for rule in self.ruleset.soft:
                occurrences = rule.count(candidate)
                if occurrences:
                    warnings.append(Finding(rule.category, occurrences))

        sanitized = self._sanitize_text(candidate, options)
        removed = max(0, len(candidate) - len(sanitized))
        removed_ratio = removed / len(candidate) if candidate else 0.0

        result = ValidationResult(
            is_valid=not findings,
            sanitized_value=sanitized,
            findings=findings,
            warnings=warnings,
            risk_level=self._risk_level(findings, warnings, removed_ratio),
            original_length=len(value),
            sanitized_length=len(sanitized),
            ruleset_version=self.ruleset.version,
        )
        self._report(result)
        return result

    def raise_for_risk(self, result: ValidationResult, threshold: str = "high") -> ValidationResult:
        """Return the result, or raise SecurityThreatDetected if its risk reaches the threshold."""
        if threshold not in RISK_LEVELS:
            raise ConfigurationError("Unknown risk threshold", {"threshold": threshold})
        if RISK_LEVELS.index(result.risk_level) < RISK_LEVELS.index(threshold):
            return result

        raise SecurityThreatDetected(
            result.risk_level,
            details={
                "categories": [finding.category for finding in result.findings],
                "ruleset_version": result.ruleset_version,
            },
        )

    def _risk_level(self, findings: List[Finding], warnings: List[Finding], removed_ratio: float) -> str:
        if len(findings) >= self.settings.risk_critical_findings:
            return "critical"
        if len(findings) >= self.settings.risk_high_findings:
            return "high"
        if len(warnings) >= self.settings.risk_medium_warnings or removed_ratio > self.settings.risk_removed_ratio:
            return "medium"
        return "low"

    def _sanitize_text(self, value: str, options: SanitizeOptions) -> str:
        if options.allow_html:
            value = _SCRIPT_OR_STYLE.sub("", value)
            value = bleach.clean(
                value,
                tags=set(options.allowed_tags),
                attributes=list(options.allowed_attributes),
                strip=True,
            )
        else:
            value = encode_entities(value)

        if options.strict_mode:
            value = strip_dangerous(value)
        return value

    def _report(self, result: ValidationResult) -> None:
        if self.metrics:
            for finding in result.findings:
                self.metrics.record_sanitizer_finding(finding.category, finding.occurrences)

        if result.is_valid:
            return

        categories = [finding.category for finding in result.findings]
        self.logger.warning(
            "Input threat detected",
            categories=categories,
            risk_level=result.risk_level,
            ruleset_version=result.ruleset_version,
        )
        if self.violation_log is not None:
            self.violation_log.record(
                ViolationType.XSS,
                Severity(result.risk_level),
                "Input threat detected",
                source="sanitizer",
                details={"categories": categories, "ruleset_version": result.ruleset_version},
            )

    def sanitize(self, value: Any, options: Optional[SanitizeOptions] = None) -> str:
        """Sanitized form of a value, without scoring or reporting."""
        if not isinstance(value, str):
            return ""
        options = options or self.default_options
        if exceeds_length(value, options.max_length):
            value = value[:options.max_length]
        return self._sanitize_text(value, options)

    def sanitize_payload(self, payload: Any, options: Optional[SanitizeOptions] = None) -> Any:
        """Recursively sanitize every string leaf of a JSON-like structure."""
        if isinstance(payload, str):
            return self.sanitize(payload, options)
        if isinstance(payload, dict):
            return {key: self.sanitize_payload(item, options) for key, item in payload.items()}
        if isinstance(payload, list):
            return [self.sanitize_payload(item, options) for item in payload]
        if isinstance(payload, tuple):
            return tuple(self.sanitize_payload(item, options) for item in payload)
        return payload

    def banking_options(self, field_type: str = "general") -> SanitizeOptions:
        max_length = BANKING_FIELD_LIMITS.get(field_type, BANKING_FIELD_LIMITS["general"])
        return replace(
            self.default_options,
            allow_html=False,
            max_length=max_length,
            strict_mode=True,
            banking_mode=True,
        )

    def validate_banking_input(self, value: Any, field_type: str = "general") -> ValidationResult:
        """Validate a banking form field using its preset limits."""
        return self.validate(value, self.banking_options(field_type))

    def validate_form_data(
        self,
        record: Mapping[str, Any],
        per_field_options: Optional[Mapping[str, SanitizeOptions]] = None,
    ) -> FormValidationResult:
        """Validate every string field of a form; other values pass through."""
        per_field_options = per_field_options or {}
        sanitized_data: Dict[str, Any] = {}
        field_results: Dict[str, ValidationResult] = {}

        for name, value in record.items():
            if not isinstance(value, str):
                sanitized_data[name] = value
                continue
            result = self.validate(value, per_field_options.get(name))
            field_results[name] = result
            sanitized_data[name] = result.sanitized_value

        return FormValidationResult(
            is_valid=all(result.is_valid for result in field_results.values()),
            sanitized_data=sanitized_data,
            field_results=field_results,
            overall_risk=max_risk(result.risk_level for result in field_results.values()),
        )

    def validate_url(self, url: Any) -> UrlValidationResult:
        """Reject dangerous URL schemes and percent-encode unsafe characters."""
        if not isinstance(url, str) or not url.strip():
            return UrlValidationResult(is_valid=False, sanitized_url="", errors=["empty_url"])

        stripped = url.strip()
        normalized = re.sub(r"\s+", "", stripped).lower()
        errors = [
            f"dangerous_protocol:{scheme[:-1]}"
            for scheme in DANGEROUS_URL_SCHEMES
            if normalized.startswith(scheme)
        ]

        warnings = [
            rule.category
            for rule in self.ruleset.soft
            if rule.category == "phishing_domain" and rule.count(stripped)
        ]

        if errors:
            self.logger.warning("Dangerous URL rejected", errors=errors)
            return UrlValidationResult(is_valid=False, sanitized_url="", errors=errors, warnings=warnings)

        sanitized = quote(stripped, safe=":/?#[]@!$&'()*+,;=%~")
        return UrlValidationResult(is_valid=True, sanitized_url=sanitized, warnings=warnings)

    def generate_security_report(self, results: Iterable[ValidationResult]) -> Dict[str, Any]:
        """Summarize a batch of validation results."""
        results = list(results)
        risk_distribution = {level: 0 for level in RISK_LEVELS}
        finding_counts: Counter = Counter()
        warning_total = 0

        for result in results:
            risk_distribution[result.risk_level] += 1
            warning_total += len(result.warnings)
            for finding in result.findings:
                finding_counts[finding.category] += finding.occurrences

        invalid = sum(1 for result in results if not result.is_valid)
        return {
            "total": len(results),
            "valid": len(results) - invalid,
            "invalid": invalid,
            "risk_distribution": risk_distribution,
            "warnings": warning_total,
            "top_findings": [
                {"category": category, "occurrences": occurrences}
                for category, occurrences in finding_counts.most_common(5)
            ],
            "ruleset_version": self.ruleset.version,
        }
