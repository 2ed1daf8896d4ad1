from __future__ import annotations

import json
from uuid import UUID

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from email_security.domain.interfaces import AuditPublisherPort
from email_security.domain.models import OutputCheckResult, SecurityCheckResult
from shared.events.base import BaseEvent
from shared.events.security_events import InboundCheckCompletedEvent, OutputCheckCompletedEvent

logger = structlog.get_logger(__name__)


def build_inbound_event(
    result: SecurityCheckResult, correlation_id: str, tenant_id: str
) -> InboundCheckCompletedEvent:
    return InboundCheckCompletedEvent(
        correlation_id=UUID(correlation_id),
        tenant_id=tenant_id,
        check_id=result.check_id,
        checked_at=result.timestamp,
        blocked=result.blocked,
        requires_review=result.requires_review,
        risk_level=result.risk_level.value,
        total_risk_score=result.total_risk_score,
        original_hash=result.sanitization.original_hash,
        classifier_invoked=result.classification is not None,
        record=result.model_dump(mode="json"),
    )


def build_output_event(
    result: OutputCheckResult, correlation_id: str, tenant_id: str
) -> OutputCheckCompletedEvent:
    return OutputCheckCompletedEvent(
        correlation_id=UUID(correlation_id),
        tenant_id=tenant_id,
        check_id=result.check_id,
        checked_at=result.timestamp,
        passed=result.passed,
        requires_review=result.requires_review,
        violation_count=len(result.validation.violations),
        content_hash=result.validation.content_hash,
        record=result.model_dump(mode="json"),
    )


class LoggingAuditPublisher(AuditPublisherPort):
    """Writes audit events to the structured log stream."""

    async def publish_inbound_check(
        self, result: SecurityCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        self._emit(build_inbound_event(result, correlation_id, tenant_id))

    async def publish_output_check(
        self, result: OutputCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        self._emit(build_output_event(result, correlation_id, tenant_id))

    @staticmethod
    def _emit(event: BaseEvent) -> None:
        logger.info("audit.event", topic=event.topic, **event.model_dump(mode="json"))


class RedpandaAuditPublisher(AuditPublisherPort):
    def __init__(
        self,
        bootstrap_servers: str,
        inbound_topic: str = "email_security.inbound_checked",
        output_topic: str = "email_security.output_checked",
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._inbound_topic = inbound_topic
        self._output_topic = output_topic
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        try:
            await self._producer.start()
        except KafkaError as exc:
            logger.error(
                "producer.start.failed",
                bootstrap_servers=self._bootstrap_servers,
                error=str(exc),
            )
            raise
        logger.info(
            "producer.started",
            bootstrap_servers=self._bootstrap_servers,
            topics=[self._inbound_topic, self._output_topic],
        )

    async def stop(self) -> None:
        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as exc:
                logger.warning("producer.stop.error", error=str(exc))
            finally:
                self._producer = None
                logger.info("producer.stopped")

    async def publish_inbound_check(
        self, result: SecurityCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        event = build_inbound_event(result, correlation_id, tenant_id)
        await self._send(self._inbound_topic, event)

    async def publish_output_check(
        self, result: OutputCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        event = build_output_event(result, correlation_id, tenant_id)
        await self._send(self._output_topic, event)

    async def _send(self, topic: str, event: BaseEvent) -> None:
        if not self._producer:
            raise RuntimeError("Producer is not started. Call start() first.")

        log = logger.bind(
            correlation_id=str(event.correlation_id),
            topic=topic,
            event_id=str(event.event_id),
        )

        try:
            await self._producer.send_and_wait(
                topic=topic,
                value=event.model_dump(mode="json"),
                key=event.partition_key,
            )
        except KafkaError as exc:
            log.error("event.publish.failed", error=str(exc))
            raise

        log.info("event.published")
