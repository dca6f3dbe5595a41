"""
Unit tests for CSP directives and the policy composer.
"""

import base64
import hashlib

import pytest

from service_security.app.csp.composer import PolicyComposer
from service_security.app.csp.directives import REQUIRED_DIRECTIVES, DirectiveSet
from service_security.app.csp.presets import FEATURE_OVERLAYS
from service_security.app.events import Severity, ViolationLog, ViolationType
from shared.errors import ConfigurationError, ValidationError
from shared.test_helpers import FakeClock, SecurityDataFactory, make_settings


class TestDirectiveSet:
    """Test cases for DirectiveSet merging."""

    def test_real_source_replaces_none(self):
        directives = DirectiveSet({"frame-src": ["'none'"]})
        directives.add("frame-src", ["https://pay.kbstar.com"])
        assert directives.get("frame-src") == ["https://pay.kbstar.com"]

    def test_none_never_joins_non_empty_list(self):
        directives = DirectiveSet({"script-src": ["'self'"]})
        directives.add("script-src", ["'none'"])
        assert directives.get("script-src") == ["'self'"]

    def test_union_is_ordered_and_deduplicated(self):
        directives = DirectiveSet({"img-src": ["'self'", "data:"]})
        directives.merge({"img-src": ["data:", "blob:", "'self'"]})
        assert directives.get("img-src") == ["'self'", "data:", "blob:"]

    def test_unknown_directive_rejected(self):
        with pytest.raises(ConfigurationError):
            DirectiveSet({"made-up-src": ["'self'"]})

    def test_empty_directive_rejected(self):
        with pytest.raises(ConfigurationError):
            DirectiveSet({"script-src": []})

    def test_boolean_directives_carry_no_values(self):
        directives = DirectiveSet({"upgrade-insecure-requests": []})
        directives.add("upgrade-insecure-requests", ["ignored"])
        assert directives.get("upgrade-insecure-requests") == []
        assert "upgrade-insecure-requests" in directives

    def test_names_follow_vocabulary_order(self):
        directives = DirectiveSet({"img-src": ["'self'"], "default-src": ["'self'"]})
        assert directives.names() == ["default-src", "img-src"]

    def test_copy_is_independent(self):
        original = DirectiveSet({"img-src": ["'self'"]})
        clone = original.copy()
        clone.add("img-src", ["data:"])
        assert original.get("img-src") == ["'self'"]
        assert clone != original


class TestPolicyComposer:
    """Test cases for PolicyComposer."""

    @pytest.fixture
    def violation_log(self):
        return ViolationLog(capacity=100, clock=FakeClock())

    @pytest.fixture
    def composer(self, violation_log):
        return PolicyComposer(make_settings(environment="development"), violation_log=violation_log)

    @pytest.fixture
    def production(self):
        return PolicyComposer(make_settings(environment="production"))

    @pytest.mark.parametrize("environment", ["development", "testing", "production"])
    def test_environment_presets_pass_validation(self, composer, environment):
        policy = composer.policy(environment)

        for name in REQUIRED_DIRECTIVES:
            assert name in policy
        result = composer.validate(policy, environment=environment)
        assert result.passed, result.errors

    def test_compose_is_cached_and_copied(self, composer):
        first = composer.compose("production")
        first.add("img-src", ["https://cdn.example.com"])

        second = composer.compose("production")

        assert "https://cdn.example.com" not in second.get("img-src")
        assert len(composer._cache) == 1

    def test_environment_overlay_is_a_union(self, composer):
        development = composer.compose("development")
        assert development.get("script-src")[:3] == ["'self'", "'nonce-{nonce}'", "'strict-dynamic'"]
        assert "'unsafe-eval'" in development.get("script-src")
        assert development.get("font-src") == ["'self'", "data:"]

    def test_production_overlay(self, composer):
        production = composer.compose("production")
        assert production.get("upgrade-insecure-requests") == []
        assert production.get("trusted-types") == ["kb-banking-policy", "default"]
        assert production.get("require-trusted-types-for") == ["'script'"]

    def test_payment_feature_opens_frames(self, composer):
        directives = composer.compose("production", ["payment"])

        assert directives.get("frame-src") == FEATURE_OVERLAYS["payment"]["frame-src"]
        assert directives.get("child-src") == ["https://pay.kbstar.com"]
        assert "https://api.tosspayments.com" in directives.get("connect-src")

    def test_mobile_feature_drops_default_none(self, composer):
        directives = composer.compose("production", ["mobile"])
        assert directives.get("default-src")[0] == "'self'"
        assert "'none'" not in directives.get("default-src")

    def test_high_security_feature(self, composer):
        directives = composer.compose("testing", ["highSecurity"])
        assert directives.get("trusted-types") == ["banking-policy", "default"]
        assert directives.get("frame-ancestors") == ["'none'"]
        assert "block-all-mixed-content" in directives

    def test_features_from_settings(self):
        composer = PolicyComposer(make_settings(features={"analytics": True, "pwa": True}))
        directives = composer.compose()
        assert "https://www.googletagmanager.com" in directives.get("script-src")
        assert "blob:" in directives.get("worker-src")

    def test_unknown_feature_and_environment(self, composer):
        with pytest.raises(ConfigurationError):
            composer.compose("production", ["telepathy"])
        with pytest.raises(ConfigurationError):
            composer.compose("staging")

    def test_nonce_lifecycle(self, composer):
        nonce = composer.get_nonce()
        assert composer.get_nonce() == nonce
        assert len(base64.b64decode(nonce)) == 16

        refreshed = composer.refresh_nonce()
        assert refreshed != nonce
        assert composer.get_nonce() == refreshed

    def test_header_interpolates_nonce(self, composer):
        nonce = composer.get_nonce()

        header = composer.generate_header("testing")

        assert header.startswith(
            f"default-src 'none'; script-src 'self' 'nonce-{nonce}' 'strict-dynamic' https://testing-api.kbstar.com; "
            f"style-src 'self' 'nonce-{nonce}'; "
        )
        assert "{nonce}" not in header
        assert header.endswith("; report-uri /api/security/csp-violations")

    def test_nonce_added_without_placeholder(self, composer):
        composer.compose("testing")
        composer._cache[("testing", ())].replace("style-src", ["'self'"])

        policy = composer.policy("testing")

        assert policy.get("style-src") == ["'self'", f"'nonce-{composer.get_nonce()}'"]

    def test_explicit_nonce_is_not_stored(self, composer):
        current = composer.get_nonce()

        header = composer.generate_header("testing", nonce="cGlubmVk")
        headers = composer.all_headers("testing", nonce="cGlubmVk")

        assert "'nonce-cGlubmVk'" in header
        assert f"'nonce-{current}'" not in header
        assert headers[composer.header_name()] == header
        assert composer.get_nonce() == current

    def test_nonce_disabled(self):
        composer = PolicyComposer(make_settings(csp_enable_nonce=False))
        header = composer.generate_header("production")
        assert "nonce" not in header
        assert "script-src 'self' 'strict-dynamic';" in header

    def test_boolean_directives_render_bare(self, production):
        header = production.generate_header()
        assert "; upgrade-insecure-requests; block-all-mixed-content; " in header

    def test_report_to(self):
        composer = PolicyComposer(make_settings(csp_report_uri=None, csp_report_to="csp-endpoint"))
        header = composer.generate_header("production")
        assert header.endswith("; report-to csp-endpoint")
        assert "report-uri" not in header

    def test_header_name(self, composer, production):
        assert composer.header_name() == "Content-Security-Policy-Report-Only"
        assert production.header_name() == "Content-Security-Policy"
        enforced = PolicyComposer(make_settings(environment="development", csp_report_only=False))
        assert enforced.header_name() == "Content-Security-Policy"

    def test_hash_source(self, composer):
        source = composer.add_hash_source("alert(1)")

        digest = base64.b64encode(hashlib.sha256(b"alert(1)").digest()).decode()
        assert source == f"'sha256-{digest}'"
        assert source in composer.policy("production").get("script-src")

    def test_add_allowed_source(self, composer):
        composer.add_allowed_source("img-src", "https://cdn.kbstar.com")
        assert "https://cdn.kbstar.com" in composer.policy("production").get("img-src")

        with pytest.raises(ConfigurationError):
            composer.add_allowed_source("bogus-src", "https://x")

    def test_unsafe_sources_flagged_in_production(self, production):
        production.add_allowed_source("script-src", "'unsafe-inline'")

        lenient = production.validate()
        strict = production.validate(strict=True)

        assert lenient.passed
        assert any("'unsafe-inline'" in warning for warning in lenient.warnings)
        assert not strict.passed
        assert any("'unsafe-inline'" in error for error in strict.errors)

    def test_clickjacking_check(self, composer):
        policy = composer.policy("production").replace("frame-ancestors", ["*"])

        production_result = composer.validate(policy, environment="production")
        development_result = composer.validate(policy, environment="development")

        assert not production_result.passed
        assert development_result.passed
        assert any("frame-ancestors" in warning for warning in development_result.warnings)

    def test_missing_required_directives(self, composer):
        result = composer.validate(DirectiveSet({"default-src": ["'self'"], "frame-ancestors": ["'self'"]}))

        assert not result.passed
        assert result.errors == [
            "Missing required directive: script-src",
            "Missing required directive: style-src",
            "Missing required directive: img-src",
        ]

    def test_generated_header_syntax_is_valid(self, production):
        result = production.validate_header_syntax(production.generate_header())
        assert result.passed, result.errors

    @pytest.mark.parametrize(
        "raw,message",
        [
            ("default-src 'self'; made-up 'self'", "Unknown directive: made-up"),
            ("default-src 'self'; script-src", "Directive script-src has no values"),
            ("default-src 'self; img-src data:", "Unbalanced quotes in default-src: 'self"),
        ],
    )
    def test_header_syntax_errors(self, composer, raw, message):
        result = composer.validate_header_syntax(raw)
        assert not result.passed
        assert message in result.errors

    def test_header_syntax_warnings(self, composer):
        result = composer.validate_header_syntax("default-src 'self'; default-src 'none'; upgrade-insecure-requests 1")
        assert result.passed
        assert result.warnings == [
            "Duplicate directive: default-src",
            "Directive upgrade-insecure-requests takes no values",
        ]

    def test_security_headers(self, composer, production):
        headers = composer.security_headers()
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "camera=()" in headers["Permissions-Policy"]
        assert "Strict-Transport-Security" not in headers

        assert production.security_headers()["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains; preload"
        no_hsts = PolicyComposer(make_settings(environment="production", enable_hsts=False))
        assert "Strict-Transport-Security" not in no_hsts.security_headers()

    def test_all_headers(self, production):
        headers = production.all_headers()
        assert headers["Content-Security-Policy"].startswith("default-src 'none'")
        assert headers["Cross-Origin-Opener-Policy"] == "same-origin"


class TestViolationReports:
    """Test cases for CSP violation intake."""

    @pytest.fixture
    def violation_log(self):
        return ViolationLog(capacity=100, clock=FakeClock())

    @pytest.fixture
    def composer(self, violation_log):
        return PolicyComposer(make_settings(), violation_log=violation_log)

    def test_wrapped_report(self, composer, violation_log):
        suggestions = composer.handle_violation_report(SecurityDataFactory.csp_report())

        assert suggestions == ["Use nonce or hash for inline scripts", "Move inline scripts to external files"]
        event = violation_log.recent()[0]
        assert event.type == ViolationType.CSP
        assert event.severity == Severity.HIGH
        assert event.source == "https://kbstar.com/transfer"
        assert event.details["directive"] == "script-src"

    def test_native_event_fields(self, composer, violation_log):
        suggestions = composer.handle_violation_report({
            "violatedDirective": "img-src",
            "blockedURI": "data:image/png",
            "documentURI": "https://kbstar.com/",
        })

        assert suggestions == ["Add 'data:image/png' to img-src directive", "Add 'data:' to img-src for base64 images"]
        assert violation_log.recent()[0].severity == Severity.MEDIUM

    @pytest.mark.parametrize(
        "directive,blocked,expected",
        [
            ("style-src", "inline", ["Use nonce or hash for inline styles", "Move inline styles to external CSS files"]),
            ("script-src 'self'", "https://cdn.x.com", ["Add 'https://cdn.x.com' to script-src directive"]),
            ("connect-src", "https://api.x.com", [
                "Add 'https://api.x.com' to connect-src directive",
                "Check if this is a legitimate API endpoint",
            ]),
            ("frame-src", "https://f.x.com", [
                "Add 'https://f.x.com' to frame-src directive",
                "Verify if embedding this content is secure",
            ]),
            ("media-src", "https://m.x.com", [
                "Review the media-src directive",
                "Consider adding 'https://m.x.com' if it's trusted",
            ]),
        ],
    )
    def test_suggestions(self, composer, directive, blocked, expected):
        assert composer.handle_violation_report(SecurityDataFactory.csp_report(directive, blocked)) == expected

    def test_rejects_non_object_reports(self, composer):
        with pytest.raises(ValidationError):
            composer.handle_violation_report(["not", "an", "object"])
        with pytest.raises(ValidationError):
            composer.handle_violation_report({"csp-report": "nope"})
