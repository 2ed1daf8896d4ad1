from __future__ import annotations


class EmailSecurityError(Exception):
    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class ClassificationBackendError(EmailSecurityError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"Classification request failed: {detail}",
            error_code="CLASSIFICATION_BACKEND_ERROR",
        )


class InvalidEmailError(EmailSecurityError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"Inbound email is malformed: {detail}",
            error_code="INVALID_EMAIL",
        )


class ConfigurationError(EmailSecurityError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"Invalid security configuration: {detail}",
            error_code="INVALID_CONFIGURATION",
        )
