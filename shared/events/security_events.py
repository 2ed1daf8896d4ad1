from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from shared.events.base import BaseEvent


class InboundCheckCompletedEvent(BaseEvent):
    """Emitted after every inbound security check, blocked or not.

    Consumed by: audit_service (persists verbatim), review queue handlers.
    Topic: email_security.inbound_checked
    Partition key: tenant_id

    Example payload:
    {
        "event_id": "550e8400-e29b-41d4-a716-446655440000",
        "event_type": "email_security.inbound_checked",
        "correlation_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
        "tenant_id": "tenant_ring",
        "schema_version": "1.0",
        "timestamp_utc": "2026-10-19T09:12:44.120Z",
        "check_id": "sec_mgx1k2p4_9f3a01bc",
        "checked_at": "2026-10-19T09:12:44.118Z",
        "blocked": true,
        "requires_review": true,
        "risk_level": "critical",
        "total_risk_score": 0.8,
        "original_hash": "3b1f...e9",
        "classifier_invoked": false,
        "record": {"passed": false, "blocked": true, "...": "..."}
    }
    """

    event_type: Literal["email_security.inbound_checked"] = Field(
        default="email_security.inbound_checked",
        description="Discriminator field, always 'email_security.inbound_checked'.",
    )
    check_id: str = Field(description="Opaque identifier of the security check.")
    checked_at: datetime = Field(description="Timestamp recorded on the check result.")
    blocked: bool
    requires_review: bool
    risk_level: str = Field(description="Risk band derived from the combined score.")
    total_risk_score: float = Field(ge=0.0, le=1.0)
    original_hash: str = Field(description="sha256 of the raw email body, for non-repudiation.")
    classifier_invoked: bool
    record: dict[str, Any] = Field(description="Full check result, serialized verbatim.")

    @property
    def topic(self) -> str:
        return "email_security.inbound_checked"


class OutputCheckCompletedEvent(BaseEvent):
    """Emitted after every outbound reply validation.

    Consumed by: audit_service, draft approval workflow.
    Topic: email_security.output_checked
    Partition key: tenant_id
    """

    event_type: Literal["email_security.output_checked"] = Field(
        default="email_security.output_checked",
        description="Discriminator field, always 'email_security.output_checked'.",
    )
    check_id: str = Field(description="Opaque identifier of the output check.")
    checked_at: datetime = Field(description="Timestamp recorded on the check result.")
    passed: bool
    requires_review: bool
    violation_count: int = Field(ge=0)
    content_hash: str = Field(description="sha256 of the final (possibly redacted) reply.")
    record: dict[str, Any] = Field(description="Full check result, serialized verbatim.")

    @property
    def topic(self) -> str:
        return "email_security.output_checked"
