"""
Shared configuration management for the request security layer.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["development", "testing", "production"]
SecurityLevel = Literal["low", "medium", "high", "maximum"]

ROUTE_CLASSES = ("general", "auth", "transfer")

_FIFTEEN_MINUTES_MS = 15 * 60 * 1000


class RateLimitConfig(BaseModel):
    """Sliding-window parameters for one route class."""

    max_requests: int = Field(gt=0)
    window_ms: int = Field(gt=0)
    block_duration_ms: int = Field(default=0, ge=0)


class SecurityProfile(BaseModel):
    """Defaults implied by a security level."""

    csrf_token_lifetime_ms: int
    strict_origin_validation: bool
    max_input_length: int
    strict_mode: bool
    rate_limits: Dict[str, RateLimitConfig]


def _limits(general: int, auth: int, transfer: int, block_ms: int) -> Dict[str, RateLimitConfig]:
    return {
        name: RateLimitConfig(max_requests=value, window_ms=_FIFTEEN_MINUTES_MS, block_duration_ms=block_ms)
        for name, value in (("general", general), ("auth", auth), ("transfer", transfer))
    }


SECURITY_LEVELS: Dict[str, SecurityProfile] = {
    "low": SecurityProfile(
        csrf_token_lifetime_ms=2 * 60 * 60 * 1000,
        strict_origin_validation=False,
        max_input_length=10000,
        strict_mode=False,
        rate_limits=_limits(1000, 20, 50, 5 * 60 * 1000),
    ),
    "medium": SecurityProfile(
        csrf_token_lifetime_ms=60 * 60 * 1000,
        strict_origin_validation=True,
        max_input_length=5000,
        strict_mode=True,
        rate_limits=_limits(500, 10, 20, 15 * 60 * 1000),
    ),
    "high": SecurityProfile(
        csrf_token_lifetime_ms=30 * 60 * 1000,
        strict_origin_validation=True,
        max_input_length=2000,
        strict_mode=True,
        rate_limits=_limits(200, 5, 10, 30 * 60 * 1000),
    ),
    "maximum": SecurityProfile(
        csrf_token_lifetime_ms=15 * 60 * 1000,
        strict_origin_validation=True,
        max_input_length=1000,
        strict_mode=True,
        rate_limits=_limits(100, 3, 5, 60 * 60 * 1000),
    ),
}


class FeatureFlags(BaseModel):
    """Page features that contribute CSP overlays."""

    payment: bool = False
    authentication: bool = False
    analytics: bool = False
    pwa: bool = False
    mobile: bool = False
    high_security: bool = False

    def enabled(self) -> List[str]:
        """Names of the enabled overlays, in overlay order."""
        names = {
            "payment": self.payment,
            "authentication": self.authentication,
            "analytics": self.analytics,
            "pwa": self.pwa,
            "mobile": self.mobile,
            "highSecurity": self.high_security,
        }
        return [name for name, on in names.items() if on]


class SecuritySettings(BaseSettings):
    """Configuration for the security layer, read from SECURITY_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    service_name: str = "security"
    host: str = "0.0.0.0"
    port: int = 8020
    environment: Environment = "development"
    log_level: str = "info"
    security_level: SecurityLevel = "medium"
    features: FeatureFlags = Field(default_factory=FeatureFlags)

    # CSRF
    csrf_secret: Optional[SecretStr] = None
    csrf_token_lifetime_ms: Optional[int] = None
    csrf_header_name: str = "X-CSRF-Token"
    csrf_cookie_name: str = "csrf_token"
    csrf_same_site: Literal["Strict", "Lax", "None"] = "Strict"
    csrf_http_only: bool = True
    csrf_secure: bool = True
    csrf_required: bool = True
    csrf_auto_issue: bool = False
    trusted_origins: List[str] = ["https://kbstar.com", "https://api.kbstar.com"]

    # Banking risk classification
    high_risk_paths: List[str] = ["transfer", "payment", "loan", "account-close"]
    large_transaction_threshold: float = 1_000_000

    # Sanitizer
    max_input_length: Optional[int] = None
    strict_mode: Optional[bool] = None
    banking_mode: bool = True
    allowed_tags: List[str] = ["b", "i", "em", "strong", "p", "br"]
    allowed_attributes: List[str] = ["class", "id"]
    risk_critical_findings: int = 3
    risk_high_findings: int = 1
    risk_medium_warnings: int = 3
    risk_removed_ratio: float = 0.3

    # Rate limiting overrides, keyed by route class
    rate_limits: Dict[str, RateLimitConfig] = {}

    # Gateway
    allowed_origins: List[str] = []
    client_origin: Optional[str] = None
    max_response_bytes: int = 10 * 1024 * 1024
    request_timeout_seconds: float = 10.0
    expected_response_headers: List[str] = ["X-Content-Type-Options", "X-Frame-Options"]

    # Content Security Policy
    csp_report_uri: Optional[str] = "/api/security/csp-violations"
    csp_report_to: Optional[str] = None
    csp_report_only: Optional[bool] = None
    csp_enable_nonce: bool = True
    enable_hsts: bool = True

    # Violation log
    violation_log_capacity: int = Field(default=100, gt=0)

    @property
    def profile(self) -> SecurityProfile:
        return SECURITY_LEVELS[self.security_level]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def token_lifetime_ms(self) -> int:
        if self.csrf_token_lifetime_ms is not None:
            return self.csrf_token_lifetime_ms
        return self.profile.csrf_token_lifetime_ms

    @property
    def effective_max_input_length(self) -> int:
        if self.max_input_length is not None:
            return self.max_input_length
        return self.profile.max_input_length

    @property
    def effective_strict_mode(self) -> bool:
        if self.strict_mode is not None:
            return self.strict_mode
        return self.profile.strict_mode

    @property
    def report_only(self) -> bool:
        # Development runs the policy in report-only mode unless told otherwise.
        if self.csp_report_only is not None:
            return self.csp_report_only
        return self.environment == "development"

    def rate_limit_for(self, route_class: str) -> RateLimitConfig:
        """Rate-limit parameters for a route class, falling back to 'general'."""
        if route_class in self.rate_limits:
            return self.rate_limits[route_class]
        limits = self.profile.rate_limits
        return limits.get(route_class, limits["general"])


def get_config(**overrides) -> SecuritySettings:
    """Get configuration, with optional explicit overrides."""
    return SecuritySettings(**overrides)
