from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.LOW: 0.1,
    Severity.MEDIUM: 0.25,
    Severity.HIGH: 0.5,
    Severity.CRITICAL: 0.8,
}


def weighted_risk_score(severities: Iterable[Severity]) -> float:
    """Sum of severity weights, clamped to 1.0."""
    return min(1.0, sum(SEVERITY_WEIGHTS[s] for s in severities))


class PatternType(StrEnum):
    ZERO_WIDTH_CHAR = "zero_width_char"
    UNICODE_OBFUSCATION = "unicode_obfuscation"
    BASE64_PAYLOAD = "base64_payload"
    DELIMITER_CONFUSION = "delimiter_confusion"
    INSTRUCTION_OVERRIDE = "instruction_override"
    SYSTEM_PROMPT_INJECTION = "system_prompt_injection"
    ROLE_MANIPULATION = "role_manipulation"
    ENCODING_ATTACK = "encoding_attack"
    EXFILTRATION_ATTEMPT = "exfiltration_attempt"
    JAILBREAK_ATTEMPT = "jailbreak_attempt"


class ViolationType(StrEnum):
    SYSTEM_PROMPT_LEAK = "system_prompt_leak"
    INTERNAL_CONTEXT_LEAK = "internal_context_leak"
    EXFILTRATION_ATTEMPT = "exfiltration_attempt"
    EXTERNAL_URL_INCLUSION = "external_url_inclusion"
    CREDENTIAL_EXPOSURE = "credential_exposure"
    PII_EXPOSURE = "pii_exposure"
    POLICY_VIOLATION = "policy_violation"
    HALLUCINATION_INDICATOR = "hallucination_indicator"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    UNAUTHORIZED_ACTION = "unauthorized_action"


class InjectionTechnique(StrEnum):
    DIRECT_INJECTION = "direct_injection"
    INDIRECT_INJECTION = "indirect_injection"
    DELIMITER_ATTACK = "delimiter_attack"
    INSTRUCTION_OVERRIDE = "instruction_override"
    ROLE_HIJACKING = "role_hijacking"
    PAYLOAD_SPLITTING = "payload_splitting"
    CONTEXT_MANIPULATION = "context_manipulation"
    ENCODING_EVASION = "encoding_evasion"
    SOCIAL_ENGINEERING = "social_engineering"
    RECURSIVE_INJECTION = "recursive_injection"
    NONE = "none"


class RiskLevel(StrEnum):
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_LEVEL_ORDER: tuple[RiskLevel, ...] = tuple(RiskLevel)


def risk_level_for(score: float) -> RiskLevel:
    if score < 0.1:
        return RiskLevel.SAFE
    if score < 0.25:
        return RiskLevel.LOW
    if score < 0.5:
        return RiskLevel.MEDIUM
    if score < 0.75:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


class MarkerKind(StrEnum):
    EMAIL_BODY = "email_body"
    EMAIL_SUBJECT = "email_subject"
    EMAIL_SENDER = "email_sender"
    EMAIL_HEADER = "email_header"
    ATTACHMENT_NAME = "attachment_name"


class Span(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=0)
    end: int = Field(ge=0)


class FlaggedPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: PatternType
    pattern: str = Field(max_length=100)
    location: Span
    severity: Severity
    description: str


class SanitizationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    sanitized_content: str
    flagged_patterns: tuple[FlaggedPattern, ...] = ()
    risk_score: float = Field(ge=0.0, le=1.0)
    original_hash: str
    was_modified: bool

    @property
    def pattern_types(self) -> list[PatternType]:
        return [p.type for p in self.flagged_patterns]


class QuickCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    suspicious: bool
    reason: str | None = None


class InjectionClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_attack: bool
    confidence: float = Field(ge=0.0, le=1.0)
    technique: InjectionTechnique | None = None
    reasoning: str
    should_block: bool
    requires_review: bool


class InboundEmail(BaseModel):
    """Fields handed over by the mailbox/parsing collaborator."""

    model_config = ConfigDict(frozen=True)

    subject: str = ""
    sender: str
    sender_name: str | None = None
    body: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    attachment_names: list[str] = Field(default_factory=list)


class SpotlightedContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    marked_content: str
    original_length: int
    marked_length: int
    line_count: int


class SpotlightedEmail(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    sender: str
    body: str
    headers: tuple[str, ...] = ()
    attachment_names: tuple[str, ...] = ()


class SecurePrompt(BaseModel):
    model_config = ConfigDict(frozen=True)

    system_prompt: str
    user_prompt: str


class SecurityCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    blocked: bool
    requires_review: bool

    total_risk_score: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel

    sanitization: SanitizationResult
    classification: InjectionClassification | None = None
    spotlighting: SpotlightedEmail | None = None

    sanitized_content: str
    secure_prompt: SecurePrompt | None = None

    check_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processing_time_ms: float = Field(ge=0.0)


class ValidationViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ViolationType
    severity: Severity
    description: str
    location: Span | None = None
    remediation: str


class OutputValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    violations: tuple[ValidationViolation, ...] = ()
    risk_score: float = Field(ge=0.0, le=1.0)
    modified_content: str | None = None
    requires_review: bool
    content_hash: str


class LengthCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    message: str | None = None


class OutputCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    requires_review: bool
    validation: OutputValidation
    safe_content: str | None = None
    check_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Skip classification at or below this sanitizer risk
    skip_classification: float = Field(default=0.1, ge=0.0, le=1.0)
    # Always classify at or above this sanitizer risk
    force_classification: float = Field(default=0.3, ge=0.0, le=1.0)
    # Block without classification at or above this sanitizer risk
    auto_block: float = Field(default=0.75, ge=0.0, le=1.0)
    use_quick_check: bool = True

    @model_validator(mode="after")
    def _check_ordering(self) -> PipelineThresholds:
        if not self.skip_classification <= self.force_classification <= self.auto_block:
            raise ValueError(
                "thresholds must satisfy skip_classification <= force_classification <= auto_block"
            )
        return self


class ReplyLengthLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_length: int = Field(default=50, ge=0)
    max_auto_reply: int = Field(default=500, ge=1)
    max_human_assisted: int = Field(default=2000, ge=1)
