from __future__ import annotations

from abc import ABC, abstractmethod

from email_security.domain.models import OutputCheckResult, SecurityCheckResult


class ClassificationBackendPort(ABC):
    @abstractmethod
    async def complete(self, text: str, *, system_prompt: str, max_tokens: int) -> str:
        """Submit text for classification. Returns the raw model reply.

        Raises ClassificationBackendError on any transport or provider failure.
        """


class AuditPublisherPort(ABC):
    @abstractmethod
    async def publish_inbound_check(
        self, result: SecurityCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        """Emit the inbound check record for audit persistence."""

    @abstractmethod
    async def publish_output_check(
        self, result: OutputCheckResult, correlation_id: str, tenant_id: str
    ) -> None:
        """Emit the outbound check record for audit persistence."""
