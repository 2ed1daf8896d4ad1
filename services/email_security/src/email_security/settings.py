from __future__ import annotations

from pydantic import Field

from email_security.domain.exceptions import ConfigurationError
from email_security.domain.models import PipelineThresholds, ReplyLengthLimits
from shared.config.base import BaseServiceSettings


class Settings(BaseServiceSettings):
    service_name: str = "email_security"

    # Pipeline thresholds (sanitizer risk score)
    skip_classification_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    force_classification_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    auto_block_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    use_quick_check: bool = Field(default=True)

    # Injection classifier
    classifier_fast_path_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    classifier_timeout_seconds: float = Field(default=0.8, gt=0.0, le=5.0)
    classifier_max_retries: int = Field(default=0, ge=0, le=1)
    classifier_max_input_chars: int = Field(default=3000, ge=100)
    classifier_max_tokens: int = Field(default=300, ge=50, le=1000)

    # Output validation
    reply_min_length: int = Field(default=50, ge=0)
    reply_max_auto_length: int = Field(default=500, ge=1)
    reply_max_human_length: int = Field(default=2000, ge=1)
    safe_url_domains: list[str] = Field(
        default=[
            "ringdom.org",
            "ring-platform.org",
            "github.com/ring-platform",
            "docs.ringdom.org",
            "support.ringdom.org",
        ]
    )

    # Spotlighting
    organization_name: str = Field(default="Ring Platform")

    # Audit
    audit_inbound_topic: str = Field(default="email_security.inbound_checked")
    audit_output_topic: str = Field(default="email_security.output_checked")

    def pipeline_thresholds(self) -> PipelineThresholds:
        try:
            return PipelineThresholds(
                skip_classification=self.skip_classification_threshold,
                force_classification=self.force_classification_threshold,
                auto_block=self.auto_block_threshold,
                use_quick_check=self.use_quick_check,
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    def reply_length_limits(self) -> ReplyLengthLimits:
        return ReplyLengthLimits(
            min_length=self.reply_min_length,
            max_auto_reply=self.reply_max_auto_length,
            max_human_assisted=self.reply_max_human_length,
        )
