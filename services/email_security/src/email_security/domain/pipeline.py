from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Iterable

import structlog

from email_security.domain.classifier import InjectionClassifier
from email_security.domain.exceptions import InvalidEmailError
from email_security.domain.models import (
    RISK_LEVEL_ORDER,
    InboundEmail,
    InjectionClassification,
    OutputCheckResult,
    PipelineThresholds,
    RiskLevel,
    SanitizationResult,
    SecurityCheckResult,
    Severity,
    ValidationViolation,
    ViolationType,
    risk_level_for,
    weighted_risk_score,
)
from email_security.domain.output_validator import OutputValidator
from email_security.domain.sanitizer import InputSanitizer
from email_security.domain.spotlighting import Spotlighter
from shared.logging.config import check_context

logger = structlog.get_logger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

SANITIZER_WEIGHT = 0.4
CLASSIFIER_WEIGHT = 0.6


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if not value:
            return "".join(reversed(digits))


def generate_check_id() -> str:
    """Time-ordered prefix plus random suffix, e.g. ``sec_mgx1k2p4_9f3a01bc``."""
    return f"sec_{_base36(time.time_ns() // 1_000_000)}_{secrets.token_hex(4)}"


class SecurityPipeline:
    """Coordinates the four defense layers for inbound mail and outbound replies.

    Holds no per-request state; safe to share across concurrent tasks.
    """

    def __init__(
        self,
        sanitizer: InputSanitizer,
        classifier: InjectionClassifier,
        spotlighter: Spotlighter,
        validator: OutputValidator,
        thresholds: PipelineThresholds | None = None,
    ) -> None:
        self._sanitizer = sanitizer
        self._classifier = classifier
        self._spotlighter = spotlighter
        self._validator = validator
        self._thresholds = thresholds or PipelineThresholds()

    @property
    def thresholds(self) -> PipelineThresholds:
        return self._thresholds

    @property
    def system_prompt(self) -> str:
        return self._spotlighter.system_prompt

    async def check_inbound(
        self, email: InboundEmail, additional_context: str | None = None
    ) -> SecurityCheckResult:
        """Run layers 1-3 on an inbound email. Call BEFORE any generation."""
        if not isinstance(email, InboundEmail):
            raise InvalidEmailError(f"expected InboundEmail, got {type(email).__name__}")

        check_id = generate_check_id()
        with check_context(check_id):
            return await self._inspect_inbound(email, check_id, additional_context)

    async def _inspect_inbound(
        self, email: InboundEmail, check_id: str, additional_context: str | None
    ) -> SecurityCheckResult:
        started = time.perf_counter()

        logger.info(
            "pipeline.inbound.started",
            subject_length=len(email.subject),
            body_length=len(email.body),
            header_count=len(email.headers),
            attachment_count=len(email.attachment_names),
        )

        sanitization = self._sanitizer.sanitize(email.body)
        subject = self._sanitizer.sanitize_subject(email.subject)

        if sanitization.risk_score >= self._thresholds.auto_block:
            result = SecurityCheckResult(
                passed=False,
                blocked=True,
                requires_review=True,
                total_risk_score=sanitization.risk_score,
                risk_level=RiskLevel.CRITICAL,
                sanitization=sanitization,
                sanitized_content=sanitization.sanitized_content,
                check_id=check_id,
                processing_time_ms=_elapsed_ms(started),
            )
            logger.warning(
                "pipeline.inbound.auto_blocked",
                risk_score=sanitization.risk_score,
                pattern_count=len(sanitization.flagged_patterns),
                processing_time_ms=result.processing_time_ms,
            )
            return result

        classification: InjectionClassification | None = None
        if self.should_run_classifier(sanitization):
            classification = await self._classifier.classify(
                sanitization.sanitized_content, sanitization
            )

            if classification.should_block:
                total = max(sanitization.risk_score, classification.confidence)
                result = SecurityCheckResult(
                    passed=False,
                    blocked=True,
                    requires_review=True,
                    total_risk_score=total,
                    risk_level=_max_level(RiskLevel.HIGH, risk_level_for(total)),
                    sanitization=sanitization,
                    classification=classification,
                    sanitized_content=sanitization.sanitized_content,
                    check_id=check_id,
                    processing_time_ms=_elapsed_ms(started),
                )
                logger.warning(
                    "pipeline.inbound.blocked_by_classifier",
                    technique=classification.technique,
                    confidence=classification.confidence,
                    processing_time_ms=result.processing_time_ms,
                )
                return result

        marked = self._spotlighter.mark_email(
            subject=subject,
            sender=self._sanitizer.sanitize_email(email.sender),
            sender_name=self._sanitizer.sanitize_display_name(email.sender_name),
            body=sanitization.sanitized_content,
            headers={
                self._sanitizer.sanitize_subject(k): self._sanitizer.sanitize_subject(v)
                for k, v in email.headers.items()
            },
            attachment_names=[self._sanitizer.sanitize_subject(n) for n in email.attachment_names],
        )
        secure_prompt = self._spotlighter.build_secure_prompt(marked, additional_context)

        total = self.combine_risk(sanitization, classification)
        level = risk_level_for(total)
        requires_review = bool(classification and classification.requires_review) or (
            RISK_LEVEL_ORDER.index(level) >= RISK_LEVEL_ORDER.index(RiskLevel.MEDIUM)
        )

        result = SecurityCheckResult(
            passed=True,
            blocked=False,
            requires_review=requires_review,
            total_risk_score=total,
            risk_level=level,
            sanitization=sanitization,
            classification=classification,
            spotlighting=marked,
            sanitized_content=sanitization.sanitized_content,
            secure_prompt=secure_prompt,
            check_id=check_id,
            processing_time_ms=_elapsed_ms(started),
        )
        logger.info(
            "pipeline.inbound.completed",
            total_risk_score=total,
            risk_level=level,
            requires_review=requires_review,
            classifier_invoked=classification is not None,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def check_inbound_batch(
        self, emails: Iterable[InboundEmail], max_concurrency: int = 4
    ) -> list[SecurityCheckResult]:
        """Check many emails concurrently; results keep the input order."""
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        semaphore = asyncio.Semaphore(max_concurrency)

        async def _guarded(email: InboundEmail) -> SecurityCheckResult:
            async with semaphore:
                return await self.check_inbound(email)

        return list(await asyncio.gather(*(_guarded(e) for e in emails)))

    def check_output(self, response: str, is_auto_reply: bool | None = None) -> OutputCheckResult:
        """Run layer 4 on a generated reply. Call AFTER generation, BEFORE sending."""
        check_id = generate_check_id()
        with check_context(check_id):
            return self._inspect_output(response, is_auto_reply, check_id)

    def _inspect_output(
        self, response: str, is_auto_reply: bool | None, check_id: str
    ) -> OutputCheckResult:
        logger.info("pipeline.output.started", response_length=len(response or ""))

        validation = self._validator.validate(response)

        if is_auto_reply is not None:
            length_check = self._validator.validate_length(response, is_auto_reply=is_auto_reply)
            if not length_check.is_valid:
                violations = (
                    *validation.violations,
                    ValidationViolation(
                        type=ViolationType.POLICY_VIOLATION,
                        severity=Severity.MEDIUM,
                        description=length_check.message or "Length validation failed",
                        remediation="Adjust response length",
                    ),
                )
                validation = validation.model_copy(
                    update={
                        "violations": violations,
                        "risk_score": weighted_risk_score(v.severity for v in violations),
                        "requires_review": True,
                    }
                )

        if validation.is_valid:
            safe_content = validation.modified_content if validation.modified_content is not None else response
        else:
            safe_content = None

        result = OutputCheckResult(
            passed=validation.is_valid,
            requires_review=validation.requires_review,
            validation=validation,
            safe_content=safe_content,
            check_id=check_id,
        )
        logger.info(
            "pipeline.output.completed",
            passed=result.passed,
            requires_review=result.requires_review,
            violation_count=len(validation.violations),
            content_hash=validation.content_hash,
        )
        return result

    def should_run_classifier(self, sanitization: SanitizationResult) -> bool:
        risk = sanitization.risk_score
        if risk >= self._thresholds.force_classification:
            return True
        if risk <= self._thresholds.skip_classification:
            if self._thresholds.use_quick_check:
                return self._classifier.quick_check(sanitization.sanitized_content).suspicious
            return False
        return True

    @staticmethod
    def combine_risk(
        sanitization: SanitizationResult, classification: InjectionClassification | None
    ) -> float:
        if classification is None:
            return sanitization.risk_score
        return min(
            1.0,
            sanitization.risk_score * SANITIZER_WEIGHT + classification.confidence * CLASSIFIER_WEIGHT,
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def _max_level(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return max(a, b, key=RISK_LEVEL_ORDER.index)
