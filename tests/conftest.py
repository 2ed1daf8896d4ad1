from __future__ import annotations

import pytest

from email_security.domain.classifier import InjectionClassifier
from email_security.domain.interfaces import ClassificationBackendPort
from email_security.domain.output_validator import OutputValidator
from email_security.domain.pipeline import SecurityPipeline
from email_security.domain.sanitizer import InputSanitizer
from email_security.domain.spotlighting import Spotlighter


@pytest.fixture
def sanitizer() -> InputSanitizer:
    return InputSanitizer()


@pytest.fixture
def spotlighter() -> Spotlighter:
    return Spotlighter()


@pytest.fixture
def validator() -> OutputValidator:
    return OutputValidator()


@pytest.fixture
def make_pipeline(sanitizer, spotlighter, validator):
    def _make(backend: ClassificationBackendPort | None, **classifier_kwargs) -> SecurityPipeline:
        return SecurityPipeline(
            sanitizer=sanitizer,
            classifier=InjectionClassifier(backend=backend, **classifier_kwargs),
            spotlighter=spotlighter,
            validator=validator,
        )

    return _make
