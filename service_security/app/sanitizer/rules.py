"""
Threat rules for the input sanitizer.

Rules are data: each one names a category, a compiled pattern, a severity
and whether a match is a hard finding (counts toward risk) or a soft
warning (banking-sensitive content worth flagging but never blocking).
Bump RULESET_VERSION whenever a pattern changes so results stay traceable.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Pattern, Tuple

RULESET_VERSION = "1.2.0"


class RuleKind(str, Enum):
    HARD = "hard"
    SOFT = "soft"


@dataclass(frozen=True)
class ThreatRule:
    id: str
    category: str
    pattern: Pattern[str]
    severity: str
    kind: RuleKind

    def count(self, value: str) -> int:
        return sum(1 for _ in self.pattern.finditer(value))


def _rule(rule_id: str, category: str, pattern: str, severity: str, kind: RuleKind,
          flags: int = re.IGNORECASE) -> ThreatRule:
    return ThreatRule(rule_id, category, re.compile(pattern, flags), severity, kind)


HARD_RULES: Tuple[ThreatRule, ...] = (
    _rule("XSS-001", "script_tag", r"<script[^>]*>[\s\S]*?</script>", "critical", RuleKind.HARD),
    _rule("XSS-002", "javascript_protocol", r"javascript\s*:", "high", RuleKind.HARD),
    _rule("XSS-003", "vbscript_protocol", r"vbscript\s*:", "high", RuleKind.HARD),
    _rule("XSS-004", "event_handler", r"on\w+\s*=", "high", RuleKind.HARD),
    _rule("XSS-005", "css_expression", r"expression\s*\(", "high", RuleKind.HARD),
    _rule("XSS-006", "data_html_url", r"data:\s*text/html", "high", RuleKind.HARD),
    _rule("XSS-007", "embedded_object", r"<(?:object|embed|applet)[^>]*>", "high", RuleKind.HARD),
    _rule("XSS-008", "iframe", r"<iframe[^>]*>", "high", RuleKind.HARD),
    _rule("XSS-009", "form_action", r"<form[^>]*action\s*=", "high", RuleKind.HARD),
    _rule("XSS-010", "meta_refresh", r"<meta[^>]*http-equiv\s*=\s*[\"']?refresh", "high", RuleKind.HARD),
)

SOFT_RULES: Tuple[ThreatRule, ...] = (
    _rule("BNK-001", "account_number", r"\b\d{3,4}-\d{2,6}-\d{6,8}\b", "medium", RuleKind.SOFT, 0),
    _rule("BNK-002", "card_number", r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b", "medium", RuleKind.SOFT, 0),
    _rule("BNK-003", "password_keyword", r"password|비밀번호|pass|pwd", "low", RuleKind.SOFT),
    _rule(
        "BNK-004",
        "financial_keyword",
        r"계좌|잔액|이체|송금|입금|출금|대출|카드|\b(?:balance|transfer|deposit|withdraw(?:al)?|loan)\b",
        "low",
        RuleKind.SOFT,
    ),
    _rule("BNK-005", "phishing_domain", r"(?:fake|phish|scam|steal)\S*\.com", "medium", RuleKind.SOFT),
)


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: Tuple[ThreatRule, ...]

    @property
    def hard(self) -> Tuple[ThreatRule, ...]:
        return tuple(rule for rule in self.rules if rule.kind is RuleKind.HARD)

    @property
    def soft(self) -> Tuple[ThreatRule, ...]:
        return tuple(rule for rule in self.rules if rule.kind is RuleKind.SOFT)


DEFAULT_RULESET = RuleSet(version=RULESET_VERSION, rules=HARD_RULES + SOFT_RULES)
