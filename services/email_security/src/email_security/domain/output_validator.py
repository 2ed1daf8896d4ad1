from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from typing import NamedTuple
from urllib.parse import urlsplit

import structlog

from email_security.domain.models import (
    SEVERITY_WEIGHTS,
    LengthCheck,
    OutputValidation,
    ReplyLengthLimits,
    Severity,
    Span,
    ValidationViolation,
    ViolationType,
    weighted_risk_score,
)

logger = structlog.get_logger(__name__)


class OutputRule(NamedTuple):
    regex: re.Pattern[str]
    type: ViolationType
    severity: Severity
    description: str
    remediation: str


OUTPUT_RULES: tuple[OutputRule, ...] = (
    OutputRule(
        re.compile(
            r"CRITICAL SECURITY INSTRUCTION|SECURITY RULES:|You have access to:"
            r"|UNTRUSTED EMAIL (?:BODY|SUBJECT|HEADERS)",
            re.IGNORECASE,
        ),
        ViolationType.SYSTEM_PROMPT_LEAK,
        Severity.CRITICAL,
        "System prompt content detected in response",
        "Remove system instructions from response",
    ),
    OutputRule(
        re.compile(r"^[ \t]*(?:>>>|>>[SFHA]) ", re.MULTILINE),
        ViolationType.INTERNAL_CONTEXT_LEAK,
        Severity.CRITICAL,
        "Datamarking prefix leaked to output (evidence of a successful injection)",
        "Remove data markers from response",
    ),
    OutputRule(
        re.compile(
            r"(?:api[_-]?key|secret[_-]?key|password|token)[:\s=]+['\"]?[A-Za-z0-9_-]{20,}['\"]?"
            r"|\bsk-[A-Za-z0-9]{20,}|\bAKIA[0-9A-Z]{16}\b"
            r"|-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----",
            re.IGNORECASE,
        ),
        ViolationType.CREDENTIAL_EXPOSURE,
        Severity.CRITICAL,
        "Potential credential or API key in response",
        "Remove credential information",
    ),
    OutputRule(
        re.compile(
            r"\b(?:claude-(?:haiku|sonnet|opus)[\w.-]*|anthropic(?:-ai)?|gpt-[345][\w.-]*|openai)\b",
            re.IGNORECASE,
        ),
        ViolationType.INTERNAL_CONTEXT_LEAK,
        Severity.MEDIUM,
        "Internal model or vendor information leaked",
        "Remove AI model references",
    ),
    OutputRule(
        re.compile(
            r"https?://[^\s?]+\?(?:\S*?[&;])?(?:data|content|body|message|secret|payload)=\S*",
            re.IGNORECASE,
        ),
        ViolationType.EXFILTRATION_ATTEMPT,
        Severity.CRITICAL,
        "Potential data exfiltration via URL parameters",
        "Remove suspicious URLs",
    ),
    OutputRule(
        re.compile(r"https?://\S*(?:hook|callback|notify)\S*", re.IGNORECASE),
        ViolationType.EXFILTRATION_ATTEMPT,
        Severity.HIGH,
        "Webhook URL in response (potential exfiltration)",
        "Remove webhook URLs",
    ),
    OutputRule(
        re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),
        ViolationType.PII_EXPOSURE,
        Severity.CRITICAL,
        "Potential national ID number (SSN) detected",
        "Remove PII",
    ),
    OutputRule(
        re.compile(r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13})\b"),
        ViolationType.PII_EXPOSURE,
        Severity.CRITICAL,
        "Potential payment card number detected",
        "Remove payment information",
    ),
    OutputRule(
        re.compile(r"\b(?:send|forward)\s+(?:this\s+)?(?:to|email)\s+[^\s@]+@\S+", re.IGNORECASE),
        ViolationType.UNAUTHORIZED_ACTION,
        Severity.HIGH,
        "Email sending command in response",
        "Remove action commands",
    ),
    OutputRule(
        re.compile(
            r"(?:I made up|I['’]m not sure if|I don['’]t actually know|I should clarify that I)"
            r"[^\n]*?\b(?:but|however)\b",
            re.IGNORECASE,
        ),
        ViolationType.HALLUCINATION_INDICATOR,
        Severity.MEDIUM,
        "Possible hallucination or uncertainty",
        "Review for accuracy",
    ),
    OutputRule(
        re.compile(
            r"\bI (?:can['’]t|cannot|won['’]t|will not|am not able to)\b"
            r"|\bthis goes against my\b|\bI['’]m not supposed to\b",
            re.IGNORECASE,
        ),
        ViolationType.POLICY_VIOLATION,
        Severity.LOW,
        "AI policy/limitation language in customer response",
        "Rephrase more naturally",
    ),
)

_URL = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_URL_TRAILING = ".,;:!?)]}"

DEFAULT_SAFE_DOMAINS: tuple[str, ...] = (
    "ringdom.org",
    "ring-platform.org",
    "github.com/ring-platform",
    "docs.ringdom.org",
    "support.ringdom.org",
)

QUICK_REJECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"CRITICAL SECURITY INSTRUCTION", re.IGNORECASE),
    re.compile(r"^>>> ", re.MULTILINE),
    re.compile(r"api[_-]?key[:\s=]+[a-zA-Z0-9]{20,}", re.IGNORECASE),
)

_REDACTED = frozenset({
    ViolationType.SYSTEM_PROMPT_LEAK,
    ViolationType.INTERNAL_CONTEXT_LEAK,
    ViolationType.CREDENTIAL_EXPOSURE,
    ViolationType.EXFILTRATION_ATTEMPT,
    ViolationType.UNAUTHORIZED_ACTION,
})


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()


class OutputValidator:
    """Fourth defense layer: inspects generated replies before they leave."""

    def __init__(
        self,
        safe_domains: Iterable[str] = DEFAULT_SAFE_DOMAINS,
        length_limits: ReplyLengthLimits | None = None,
        rules: tuple[OutputRule, ...] = OUTPUT_RULES,
    ) -> None:
        self._safe_domains = tuple(d.lower().strip("/") for d in safe_domains)
        self._limits = length_limits or ReplyLengthLimits()
        self._rules = rules

    def validate(self, response: str) -> OutputValidation:
        response = response or ""
        violations = self.detect(response)
        risk_score = weighted_risk_score(v.severity for v in violations)

        modified: str | None = None
        if violations:
            redacted = self.redact(response, violations)
            if redacted != response:
                modified = redacted

        requires_review = risk_score > 0.5 or any(
            v.severity in (Severity.CRITICAL, Severity.HIGH) for v in violations
        )
        is_valid = not any(v.severity is Severity.CRITICAL for v in violations)

        if violations:
            logger.warning(
                "output.violations.detected",
                violation_count=len(violations),
                risk_score=risk_score,
                types=[v.type.value for v in violations],
                requires_review=requires_review,
            )

        return OutputValidation(
            is_valid=is_valid,
            violations=tuple(violations),
            risk_score=risk_score,
            modified_content=modified,
            requires_review=requires_review,
            content_hash=_sha256(modified if modified is not None else response),
        )

    def detect(self, response: str) -> list[ValidationViolation]:
        violations: list[ValidationViolation] = []
        for rule in self._rules:
            for match in rule.regex.finditer(response):
                violations.append(self._violation(rule, match.start(), match.end()))

        for start, end in self._external_urls(response):
            violations.append(
                ValidationViolation(
                    type=ViolationType.EXTERNAL_URL_INCLUSION,
                    severity=Severity.LOW,
                    description="External URL included in response",
                    location=Span(start=start, end=end),
                    remediation="Verify URL is safe and relevant",
                )
            )
        return violations

    def redact(self, response: str, violations: Iterable[ValidationViolation]) -> str:
        """Rewrite violating spans, last first so earlier offsets stay valid.

        Where spans overlap, the more severe violation wins.
        """
        located = [v for v in violations if v.location is not None]
        chosen: list[ValidationViolation] = []
        for violation in sorted(located, key=lambda v: SEVERITY_WEIGHTS[v.severity], reverse=True):
            span = violation.location
            if all(span.end <= c.location.start or span.start >= c.location.end for c in chosen):
                chosen.append(violation)

        redacted = response
        for violation in sorted(chosen, key=lambda v: v.location.start, reverse=True):
            start, end = violation.location.start, violation.location.end
            redacted = redacted[:start] + self._replacement(violation, redacted[start:end]) + redacted[end:]
        return redacted

    def is_safe_url(self, url: str) -> bool:
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            return False
        path = parts.path.lower()
        for entry in self._safe_domains:
            domain, _, prefix = entry.partition("/")
            if host != domain and not host.endswith("." + domain):
                continue
            if not prefix or path == "/" + prefix or path.startswith("/" + prefix + "/"):
                return True
        return False

    def quick_validate(self, response: str) -> bool:
        return not any(p.search(response or "") for p in QUICK_REJECT_PATTERNS)

    def validate_length(self, response: str, is_auto_reply: bool) -> LengthCheck:
        length = len(response or "")
        if length < self._limits.min_length:
            return LengthCheck(is_valid=False, message="Response too short")
        if is_auto_reply and length > self._limits.max_auto_reply:
            return LengthCheck(is_valid=False, message="Auto-reply too long, requires review")
        if length > self._limits.max_human_assisted:
            return LengthCheck(is_valid=False, message="Response exceeds maximum length")
        return LengthCheck(is_valid=True)

    @staticmethod
    def generate_hash(content: str) -> str:
        return _sha256(content)

    def _external_urls(self, response: str) -> list[tuple[int, int]]:
        spans = []
        for match in _URL.finditer(response):
            url = match.group(0).rstrip(_URL_TRAILING)
            if not self.is_safe_url(url):
                spans.append((match.start(), match.start() + len(url)))
        return spans

    @staticmethod
    def _violation(rule: OutputRule, start: int, end: int) -> ValidationViolation:
        return ValidationViolation(
            type=rule.type,
            severity=rule.severity,
            description=rule.description,
            location=Span(start=start, end=end),
            remediation=rule.remediation,
        )

    @staticmethod
    def _replacement(violation: ValidationViolation, original: str) -> str:
        if violation.type in _REDACTED:
            return "[REDACTED]"
        if violation.type is ViolationType.PII_EXPOSURE:
            return "[PII REMOVED]"
        if violation.type is ViolationType.EXTERNAL_URL_INCLUSION:
            return f"{original} (external link)"
        # Review-only categories stay in place
        return original
