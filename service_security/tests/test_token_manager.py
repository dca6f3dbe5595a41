"""
Unit tests for the CSRF token manager.
"""

import base64
import json

import pytest

from service_security.app.csrf.token_manager import BankingRequest, RequestContext, TokenManager
from shared.test_helpers import FakeClock, make_metrics, make_settings


def _reencode(token: str, **changes) -> str:
    """Rewrite a token's payload while keeping its original signature."""
    encoded, _, signature = token.rpartition(".")
    padding = "=" * (-len(encoded) % 4)
    payload = json.loads(base64.urlsafe_b64decode(encoded + padding))
    payload.update(changes)
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode() + "." + signature


class TestTokenManager:
    """Test cases for TokenManager."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def settings(self):
        return make_settings()

    @pytest.fixture
    def manager(self, settings, clock):
        return TokenManager(settings, clock=clock)

    def test_generate_token_shape(self, manager, clock):
        """Tokens are payload.signature with a one hour lifetime at medium level."""
        issued = manager.generate_token("session-1")

        encoded, _, signature = issued.token.rpartition(".")
        assert encoded and len(signature) == 64
        assert issued.session_id == "session-1"
        assert issued.issued_at == clock.now_ms()
        assert issued.expires_at == clock.now_ms() + 60 * 60 * 1000

    def test_round_trip(self, manager):
        """A freshly issued token validates for its own session."""
        issued = manager.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-1")

        assert result.is_valid
        assert result.errors == []
        assert result.expires_at == issued.expires_at

    def test_tokens_are_unique(self, manager):
        first = manager.generate_token("session-1")
        second = manager.generate_token("session-1")
        assert first.token != second.token

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "get"])
    def test_safe_methods_bypass(self, manager, method):
        """Safe methods never need a token."""
        result = manager.validate_token(None, "session-1", RequestContext(method=method))
        assert result.is_valid

    @pytest.mark.parametrize("token", [None, "", 12345])
    def test_missing_token(self, manager, token):
        result = manager.validate_token(token, "session-1")
        assert not result.is_valid
        assert result.errors == ["CSRFTokenMissing"]

    def test_tampered_signature(self, manager):
        """Changing any signature character fails verification."""
        issued = manager.generate_token("session-1")
        last = issued.token[-1]
        forged = issued.token[:-1] + ("0" if last != "0" else "1")

        result = manager.validate_token(forged, "session-1")

        assert not result.is_valid
        assert result.errors == ["SignatureMismatch"]

    def test_tampered_payload(self, manager):
        """Rewriting the payload under the original signature fails verification."""
        issued = manager.generate_token("victim")
        forged = _reencode(issued.token, sid="attacker")

        result = manager.validate_token(forged, "attacker")

        assert result.errors == ["SignatureMismatch"]

    @pytest.mark.parametrize("token", ["not-a-token", "abc.def", ".sig", "payload.", "%%%.zzz", "한글.서명"])
    def test_malformed_tokens(self, manager, token):
        result = manager.validate_token(token, "session-1")
        assert result.errors == ["SignatureMismatch"]

    def test_token_from_other_secret(self, manager, clock):
        other = TokenManager(make_settings(csrf_secret="other-secret"), clock=clock)
        issued = other.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-1")

        assert result.errors == ["SignatureMismatch"]

    def test_forged_and_expired_reports_both(self, manager, clock):
        """A readable but forged payload that has expired also reports expiry."""
        other = TokenManager(make_settings(csrf_secret="other-secret"), clock=clock)
        issued = other.generate_token("session-1")
        clock.advance_ms(other.lifetime_ms)

        result = manager.validate_token(issued.token, "session-1")

        assert result.errors == ["SignatureMismatch", "TokenExpired"]

    def test_session_mismatch(self, manager):
        issued = manager.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-2")

        assert not result.is_valid
        assert "TokenSessionMismatch" in result.errors

    def test_expiry_is_monotonic(self, manager, clock):
        """Valid until the expiry instant, invalid from then on."""
        issued = manager.generate_token("session-1")

        clock.advance_ms(manager.lifetime_ms - 1)
        assert manager.validate_token(issued.token, "session-1").is_valid

        clock.advance_ms(1)
        result = manager.validate_token(issued.token, "session-1")
        assert result.errors == ["TokenExpired"]

        clock.advance_ms(60_000)
        assert manager.validate_token(issued.token, "session-1").errors == ["TokenExpired"]

    def test_lifetime_follows_security_level(self, clock):
        manager = TokenManager(make_settings(security_level="maximum"), clock=clock)
        issued = manager.generate_token("session-1")
        assert issued.expires_at - issued.issued_at == 15 * 60 * 1000

    def test_lifetime_override(self, clock):
        manager = TokenManager(make_settings(csrf_token_lifetime_ms=5000), clock=clock)
        issued = manager.generate_token("session-1")
        assert issued.expires_at - issued.issued_at == 5000

    def test_revoked_token(self, manager):
        issued = manager.generate_token("session-1")

        assert manager.invalidate_token(issued.token) is True
        assert manager.invalidate_token(issued.token) is False

        result = manager.validate_token(issued.token, "session-1")
        assert result.errors == ["TokenRevoked"]

    def test_invalidate_session_tokens(self, manager):
        first = manager.generate_token("session-1")
        second = manager.generate_token("session-1")
        other = manager.generate_token("session-2")

        assert manager.invalidate_session_tokens("session-1") == 2

        assert manager.validate_token(first.token, "session-1").errors == ["TokenRevoked"]
        assert manager.validate_token(second.token, "session-1").errors == ["TokenRevoked"]
        assert manager.validate_token(other.token, "session-2").is_valid
        assert manager.current_token("session-1") is None

    def test_validation_does_not_mutate_store(self, manager, clock):
        issued = manager.generate_token("session-1")
        before = manager.get_protection_status()

        for _ in range(3):
            manager.validate_token(issued.token, "session-1")
            manager.validate_token(issued.token, "session-2")
            manager.validate_token("garbage", "session-1")

        assert manager.get_protection_status() == before
        assert manager.current_token("session-1") == issued

    @pytest.mark.parametrize("origin", ["https://kbstar.com", "https://www.kbstar.com", "https://api.kbstar.com"])
    def test_trusted_origins(self, manager, origin):
        issued = manager.generate_token("session-1")
        result = manager.validate_token(issued.token, "session-1", RequestContext(origin=origin))
        assert result.is_valid

    @pytest.mark.parametrize("origin", ["https://evil.com", "https://kbstar.com.evil.com", "https://notkbstar.com"])
    def test_untrusted_origins(self, manager, origin):
        issued = manager.generate_token("session-1")
        result = manager.validate_token(issued.token, "session-1", RequestContext(origin=origin))
        assert result.errors == ["InvalidOrigin"]

    @pytest.mark.parametrize("origin", ["https://kbstar.com:443", "https://www.kbstar.com:443"])
    def test_default_port_matches_trusted_origin(self, manager, origin):
        issued = manager.generate_token("session-1")
        result = manager.validate_token(issued.token, "session-1", RequestContext(origin=origin))
        assert result.is_valid
        assert result.warnings == []

    def test_non_default_port_is_untrusted(self, manager):
        issued = manager.generate_token("session-1")
        result = manager.validate_token(issued.token, "session-1", RequestContext(origin="https://kbstar.com:8443"))
        assert result.errors == ["InvalidOrigin"]

    @pytest.mark.parametrize("url", ["https://kbstar.com:99999", "https://kbstar.com:abc", "https://[::1"])
    def test_malformed_origin_is_invalid(self, manager, url):
        issued = manager.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-1", RequestContext(origin=url))

        assert result.errors == ["InvalidOrigin"]

    @pytest.mark.parametrize("url", ["https://kbstar.com:99999/page", "https://kbstar.com:abc/page", "https://[::1"])
    def test_malformed_referer_is_warning(self, manager, url):
        issued = manager.generate_token("session-1")
        context = RequestContext(origin="https://kbstar.com", referer=url)

        result = manager.validate_token(issued.token, "session-1", context)

        assert result.is_valid
        assert result.warnings == ["UntrustedReferer"]

    def test_malformed_trusted_origin_is_skipped(self, clock):
        settings = make_settings(trusted_origins=["https://bad:port", "https://kbstar.com"])
        manager = TokenManager(settings, clock=clock)
        issued = manager.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-1", RequestContext(origin="https://kbstar.com"))

        assert result.is_valid

    def test_production_rejects_plain_http_origin(self, clock):
        production = TokenManager(make_settings(environment="production"), clock=clock)
        development = TokenManager(make_settings(environment="development"), clock=clock)

        for manager in (production, development):
            issued = manager.generate_token("session-1")
            result = manager.validate_token(issued.token, "session-1", RequestContext(origin="http://kbstar.com"))
            assert result.is_valid is (manager is development)

    def test_low_level_downgrades_origin_to_warning(self, clock):
        manager = TokenManager(make_settings(security_level="low"), clock=clock)
        issued = manager.generate_token("session-1")

        result = manager.validate_token(issued.token, "session-1", RequestContext(origin="https://evil.com"))

        assert result.is_valid
        assert result.warnings == ["UntrustedOrigin"]

    def test_untrusted_referer_is_warning(self, manager):
        issued = manager.generate_token("session-1")
        context = RequestContext(origin="https://kbstar.com", referer="https://evil.com/page")

        result = manager.validate_token(issued.token, "session-1", context)

        assert result.is_valid
        assert result.warnings == ["UntrustedReferer"]

    def test_get_or_create_token(self, manager, clock):
        """The live token is reused until it expires."""
        first = manager.get_or_create_token("session-1")
        assert manager.get_or_create_token("session-1") == first

        clock.advance_ms(manager.lifetime_ms)
        renewed = manager.get_or_create_token("session-1")
        assert renewed.token != first.token
        assert manager.validate_token(renewed.token, "session-1").is_valid

    def test_prune_expired(self, manager, clock):
        manager.generate_token("session-1")
        manager.generate_token("session-2")
        clock.advance_ms(manager.lifetime_ms)
        manager_status = manager.get_protection_status()
        assert manager_status["expired_tokens"] == 2

        assert manager.prune_expired() == 2
        assert manager.get_protection_status()["expired_tokens"] == 0

    def test_cookie_header(self, manager):
        issued = manager.generate_token("session-1")

        header = manager.build_cookie_header(issued.token, issued.expires_at)

        assert header.startswith(f"csrf_token={issued.token}; Expires=")
        assert "GMT" in header
        assert "Max-Age=3600" in header
        assert "SameSite=Strict" in header
        assert "Path=/" in header
        assert header.endswith("HttpOnly; Secure")

    def test_cookie_flags_configurable(self, clock):
        manager = TokenManager(make_settings(csrf_http_only=False, csrf_secure=False, csrf_same_site="Lax"), clock=clock)
        issued = manager.generate_token("session-1")

        header = manager.build_cookie_header(issued.token, issued.expires_at)

        assert "SameSite=Lax" in header
        assert "HttpOnly" not in header
        assert "Secure" not in header

    def test_generated_secret_when_unconfigured(self, clock):
        manager = TokenManager(make_settings(csrf_secret=None), clock=clock)
        issued = manager.generate_token("session-1")
        assert manager.validate_token(issued.token, "session-1").is_valid

    def test_validation_metrics(self, settings, clock):
        metrics = make_metrics()
        manager = TokenManager(settings, metrics=metrics, clock=clock)
        issued = manager.generate_token("session-1")

        manager.validate_token(issued.token, "session-1")
        manager.validate_token("bogus", "session-1")

        registry = metrics.registry
        assert registry.get_sample_value("csrf_validations_total", {"outcome": "valid"}) == 1
        assert registry.get_sample_value("csrf_validations_total", {"outcome": "SignatureMismatch"}) == 1


class TestBankingValidation:
    """Test cases for banking request validation."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def manager(self, clock):
        return TokenManager(make_settings(), clock=clock)

    @pytest.fixture
    def token(self, manager):
        return manager.generate_token("session-1").token

    def test_low_risk_request(self, manager, token):
        request = BankingRequest(method="POST", path="/api/profile", amount=10_000)

        result = manager.validate_banking_request(token, "session-1", request)

        assert result.is_valid
        assert result.banking_risk == "low"
        assert result.additional_checks == []

    @pytest.mark.parametrize("path", ["/api/transfer", "/api/payment/confirm", "/loan/apply", "/account-close"])
    def test_high_risk_paths(self, manager, token, path):
        result = manager.validate_banking_request(token, "session-1", BankingRequest(method="POST", path=path))
        assert result.banking_risk == "high"
        assert "high_risk_path" in result.additional_checks

    def test_large_transaction_is_critical(self, manager, token):
        request = BankingRequest(method="POST", path="/api/transfer", amount=2_000_000)

        result = manager.validate_banking_request(token, "session-1", request)

        assert result.banking_risk == "critical"
        assert "large_transaction" in result.additional_checks

    def test_threshold_is_exclusive(self, manager, token):
        request = BankingRequest(method="POST", path="/api/profile", amount=1_000_000)
        assert manager.validate_banking_request(token, "session-1", request).banking_risk == "low"

    def test_account_number_format(self, manager, token):
        good = BankingRequest(method="POST", path="/api/profile", account_number="123-456-789012")
        bad = BankingRequest(method="POST", path="/api/profile", account_number="12-34")

        assert manager.validate_banking_request(token, "session-1", good).warnings == []
        result = manager.validate_banking_request(token, "session-1", bad)
        assert result.is_valid
        assert result.warnings == ["InvalidAccountNumber"]

    def test_risk_reported_even_when_token_invalid(self, manager):
        request = BankingRequest(method="POST", path="/api/transfer", amount=2_000_000)

        result = manager.validate_banking_request("forged.token", "session-1", request)

        assert not result.is_valid
        assert result.errors == ["SignatureMismatch"]
        assert result.banking_risk == "critical"
