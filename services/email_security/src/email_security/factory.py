from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import NamedTuple

import structlog

from email_security.domain.classifier import InjectionClassifier
from email_security.domain.interfaces import AuditPublisherPort, ClassificationBackendPort
from email_security.domain.output_validator import OutputValidator
from email_security.domain.pipeline import SecurityPipeline
from email_security.domain.sanitizer import InputSanitizer
from email_security.domain.spotlighting import Spotlighter
from email_security.infrastructure.audit_publisher import (
    LoggingAuditPublisher,
    RedpandaAuditPublisher,
)
from email_security.infrastructure.classification_client import AzureOpenAIClassificationBackend
from email_security.settings import Settings
from shared.logging.config import configure_logging

logger = structlog.get_logger(__name__)


class SecurityServices(NamedTuple):
    pipeline: SecurityPipeline
    audit: AuditPublisherPort


def build_classification_backend(settings: Settings) -> ClassificationBackendPort | None:
    api_key = settings.azure_openai_api_key.get_secret_value()
    if not settings.azure_openai_endpoint or not api_key:
        logger.warning("classifier.backend.disabled", reason="azure_openai_not_configured")
        return None
    return AzureOpenAIClassificationBackend(
        endpoint=settings.azure_openai_endpoint,
        api_key=api_key,
        api_version=settings.azure_openai_api_version,
        deployment=settings.azure_openai_classifier_deployment,
        timeout_seconds=settings.classifier_timeout_seconds,
    )


def build_security_pipeline(
    settings: Settings, backend: ClassificationBackendPort | None = None
) -> SecurityPipeline:
    """Construct every layer once; callers share the returned pipeline.

    Without a backend the classifier fails open and flags mail for review.
    """
    thresholds = settings.pipeline_thresholds()

    return SecurityPipeline(
        sanitizer=InputSanitizer(),
        classifier=InjectionClassifier(
            backend=backend,
            high_risk_threshold=settings.classifier_fast_path_threshold,
            timeout_seconds=settings.classifier_timeout_seconds,
            max_retries=settings.classifier_max_retries,
            max_input_chars=settings.classifier_max_input_chars,
            max_tokens=settings.classifier_max_tokens,
        ),
        spotlighter=Spotlighter(organization=settings.organization_name),
        validator=OutputValidator(
            safe_domains=settings.safe_url_domains,
            length_limits=settings.reply_length_limits(),
        ),
        thresholds=thresholds,
    )


@asynccontextmanager
async def security_pipeline_lifespan(
    settings: Settings | None = None,
    backend: ClassificationBackendPort | None = None,
) -> AsyncIterator[SecurityServices]:
    settings = settings or Settings()
    configure_logging(settings.service_name, settings.log_level)

    logger.info("service.starting", version=settings.app_version, environment=settings.environment)
    owned_backend = build_classification_backend(settings) if backend is None else None
    pipeline = build_security_pipeline(settings, backend=backend or owned_backend)

    redpanda: RedpandaAuditPublisher | None = None
    audit: AuditPublisherPort
    if settings.redpanda_bootstrap_servers:
        redpanda = RedpandaAuditPublisher(
            bootstrap_servers=settings.redpanda_bootstrap_servers,
            inbound_topic=settings.audit_inbound_topic,
            output_topic=settings.audit_output_topic,
        )
        await redpanda.start()
        audit = redpanda
    else:
        audit = LoggingAuditPublisher()

    logger.info(
        "service.ready",
        auto_block_threshold=pipeline.thresholds.auto_block,
        audit_publisher=type(audit).__name__,
    )
    try:
        yield SecurityServices(pipeline=pipeline, audit=audit)
    finally:
        if redpanda is not None:
            await redpanda.stop()
        if isinstance(owned_backend, AzureOpenAIClassificationBackend):
            await owned_backend.close()
        logger.info("service.stopped")
