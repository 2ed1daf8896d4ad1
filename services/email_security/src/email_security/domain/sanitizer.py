from __future__ import annotations

import hashlib
import re
import unicodedata
from collections import Counter
from collections.abc import Iterator
from typing import NamedTuple

import structlog

from email_security.domain.models import (
    FlaggedPattern,
    PatternType,
    SanitizationResult,
    Severity,
    Span,
    weighted_risk_score,
)

logger = structlog.get_logger(__name__)

_INVISIBLE = "\u200b-\u200d\ufeff\u2060\u180e\u00ad\u202a-\u202e\u2066-\u2069"


class DetectionRule(NamedTuple):
    regex: re.Pattern[str]
    type: PatternType
    severity: Severity
    description: str


# Order matters: raw-text matches are reported in catalog order, normalization-only matches after them.
DETECTION_RULES: tuple[DetectionRule, ...] = (
    DetectionRule(
        re.compile(f"[{_INVISIBLE}]+"),
        PatternType.ZERO_WIDTH_CHAR,
        Severity.HIGH,
        "Zero-width or invisible characters detected (potential hidden instructions)",
    ),
    DetectionRule(
        re.compile(r"\b(?=\w*[A-Za-z])(?=\w*[\u0400-\u04ff])\w+"),
        PatternType.UNICODE_OBFUSCATION,
        Severity.MEDIUM,
        "Word mixing Latin and Cyrillic letters (potential homoglyphs)",
    ),
    DetectionRule(
        re.compile(r"(?<![A-Za-z0-9+/])[A-Za-z0-9+/]{50,}={0,2}(?![A-Za-z0-9+/=])"),
        PatternType.BASE64_PAYLOAD,
        Severity.MEDIUM,
        "Large Base64 encoded content detected",
    ),
    DetectionRule(
        re.compile(r"^[ \t]*(?:system|assistant|user|human)[ \t]*:[ \t]*\r?$", re.IGNORECASE | re.MULTILINE),
        PatternType.DELIMITER_CONFUSION,
        Severity.CRITICAL,
        "Fake conversation role markers detected",
    ),
    DetectionRule(
        re.compile(r"<\s*(?:system|instructions?|prompt|context)\b[^>]*>", re.IGNORECASE),
        PatternType.SYSTEM_PROMPT_INJECTION,
        Severity.CRITICAL,
        "Fake system/instruction tags detected",
    ),
    DetectionRule(
        re.compile(
            r"\b(?:ignore|disregard|forget|override|bypass)\s+(?:all\s+)?(?:(?:the|your|any)\s+)?"
            r"(?:previous|above|prior|earlier)\s+(?:instructions?|rules?|prompts?|guidelines?|directions?)",
            re.IGNORECASE,
        ),
        PatternType.INSTRUCTION_OVERRIDE,
        Severity.CRITICAL,
        "Instruction override attempt detected",
    ),
    DetectionRule(
        re.compile(r"\b(?:new\s+)?(?:instructions?|rules?|prompts?)(?:\s+are)?[ \t]*:", re.IGNORECASE),
        PatternType.INSTRUCTION_OVERRIDE,
        Severity.HIGH,
        "New instruction injection attempt detected",
    ),
    DetectionRule(
        re.compile(
            r"\b(?:you\s+are\s+now|pretend\s+(?:to\s+be|you'?re|you\s+are)"
            r"|act\s+as\s+(?:if\s+)?(?:you'?re\s+|you\s+are\s+)?(?:a|an|the|my)\b|roleplay\s+as)",
            re.IGNORECASE,
        ),
        PatternType.ROLE_MANIPULATION,
        Severity.HIGH,
        "Role manipulation attempt detected",
    ),
    DetectionRule(
        re.compile(
            r"\b(?-i:DAN)\b|\bdo\s+anything\s+now\b|\bjailbreak(?:ing|ed)?\b"
            r"|\b(?:escape|developer|sudo|god)\s+mode\b",
            re.IGNORECASE,
        ),
        PatternType.JAILBREAK_ATTEMPT,
        Severity.CRITICAL,
        "Known jailbreak pattern detected",
    ),
    DetectionRule(
        re.compile(
            r"\b(?:send|email|post|upload|transmit|forward)\s+"
            r"(?:(?:this|it|everything|all\s+of\s+(?:this|it))\s+to\b"
            r"|(?:me\s+|us\s+)?(?:the|your)\s+(?:conversation|chat(?:\s+history)?|context|system\s+prompt|instructions|prompt)\b)",
            re.IGNORECASE,
        ),
        PatternType.EXFILTRATION_ATTEMPT,
        Severity.CRITICAL,
        "Potential data exfiltration command detected",
    ),
    DetectionRule(
        re.compile(
            r"\b(?:hex|base64|rot13|binary)\s*:\s*\S{8,}|\b(?:hex|binary)\s+(?:0x)?[0-9a-fA-F]{8,}\b",
            re.IGNORECASE,
        ),
        PatternType.ENCODING_ATTACK,
        Severity.HIGH,
        "Encoded instruction pattern detected",
    ),
    DetectionRule(
        re.compile(r"[\u0600-\u06ff]{10,}"),
        PatternType.UNICODE_OBFUSCATION,
        Severity.LOW,
        "Arabic script block detected (verify context)",
    ),
    DetectionRule(
        re.compile(r"[\u2028\u2029]+"),
        PatternType.ZERO_WIDTH_CHAR,
        Severity.MEDIUM,
        "Unusual Unicode separators detected",
    ),
)

# Characters removed outright from the cleaned text
CHARS_TO_STRIP = re.compile(f"[{_INVISIBLE}\u2028\u2029]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_LINE_BREAKS = re.compile(r"\r\n|[\r\v\f\x85]")
_TAG_BLOCK = re.compile(
    r"<\s*(system|instructions?|prompt|context)\b[^>]*>.*?<\s*/\s*\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_LONE_TAG = re.compile(r"<\s*/?\s*(?:system|instructions?|prompt|context)\b[^>]*>", re.IGNORECASE)
_EMAIL_UNSAFE = re.compile(r"[^\w.@+-]", re.ASCII)

REMOVED_PLACEHOLDER = "[REMOVED]"
NORMALIZED_NOTE = " (after normalization; location refers to the cleaned text)"
MAX_PATTERN_EXCERPT = 100
MAX_SUBJECT_LENGTH = 500
MAX_DISPLAY_NAME_LENGTH = 200
MAX_EMAIL_LENGTH = 255


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()


def _flag(rule: DetectionRule, match: re.Match[str], note: str = "") -> FlaggedPattern:
    return FlaggedPattern(
        type=rule.type,
        pattern=match.group(0)[:MAX_PATTERN_EXCERPT],
        location=Span(start=match.start(), end=match.end()),
        severity=rule.severity,
        description=rule.description + note,
    )


class InputSanitizer:
    def __init__(self, rules: tuple[DetectionRule, ...] = DETECTION_RULES) -> None:
        self._rules = rules
        self._critical_rules = tuple(r for r in rules if r.severity is Severity.CRITICAL)

    def sanitize(self, raw_text: str) -> SanitizationResult:
        """Scrub inbound text and score it. Never raises."""
        raw_text = raw_text or ""
        raw_matches = list(self._scan(raw_text))
        flagged = [_flag(rule, match) for rule, match in raw_matches]

        content = CHARS_TO_STRIP.sub("", raw_text)
        content = unicodedata.normalize("NFKC", content)
        content = _LINE_BREAKS.sub("\n", content)

        if content != raw_text:
            # Rerun over the normalized text; matches already seen in the raw pass are skipped
            remaining = Counter(rule for rule, _ in raw_matches)
            for rule, match in self._scan(content):
                if remaining[rule]:
                    remaining[rule] -= 1
                else:
                    flagged.append(_flag(rule, match, NORMALIZED_NOTE))

        content = _TAG_BLOCK.sub(REMOVED_PLACEHOLDER, content)
        content = _LONE_TAG.sub(REMOVED_PLACEHOLDER, content)

        risk_score = weighted_risk_score(p.severity for p in flagged)

        if flagged:
            logger.warning(
                "sanitizer.patterns.detected",
                pattern_count=len(flagged),
                risk_score=risk_score,
                severities=dict(Counter(p.severity.value for p in flagged)),
            )

        return SanitizationResult(
            sanitized_content=content,
            flagged_patterns=tuple(flagged),
            risk_score=risk_score,
            original_hash=_sha256(raw_text),
            was_modified=content != raw_text,
        )

    def detect(self, text: str) -> list[FlaggedPattern]:
        """Run every rule over text; spans refer to text as given."""
        return [_flag(rule, match) for rule, match in self._scan(text)]

    def _scan(self, text: str) -> Iterator[tuple[DetectionRule, re.Match[str]]]:
        for rule in self._rules:
            for match in rule.regex.finditer(text):
                yield rule, match

    def is_high_risk(self, text: str) -> bool:
        """Fast rejection check over critical-severity rules only."""
        return any(rule.regex.search(text or "") for rule in self._critical_rules)

    def sanitize_subject(self, subject: str) -> str:
        return self._single_line(subject, MAX_SUBJECT_LENGTH)

    def sanitize_display_name(self, name: str | None) -> str | None:
        if name is None:
            return None
        return self._single_line(name, MAX_DISPLAY_NAME_LENGTH).strip() or None

    def sanitize_email(self, address: str) -> str:
        return _EMAIL_UNSAFE.sub("", (address or "").lower().strip())[:MAX_EMAIL_LENGTH]

    @staticmethod
    def _single_line(value: str, limit: int) -> str:
        value = CHARS_TO_STRIP.sub("", value or "")
        value = unicodedata.normalize("NFKC", value)
        value = re.sub(r"[\r\n\x85]+", " ", value)
        value = _CONTROL_CHARS.sub("", value)
        return value[:limit]
