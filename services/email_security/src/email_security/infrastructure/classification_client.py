from __future__ import annotations

import httpx
import structlog
from openai import AsyncAzureOpenAI, OpenAIError

from email_security.domain.exceptions import ClassificationBackendError
from email_security.domain.interfaces import ClassificationBackendPort

logger = structlog.get_logger(__name__)


class AzureOpenAIClassificationBackend(ClassificationBackendPort):
    def __init__(
        self,
        endpoint: str,
        api_key: str,
        api_version: str,
        deployment: str,
        timeout_seconds: float = 0.8,
    ) -> None:
        # Retries belong to InjectionClassifier, so the SDK must not add its own.
        self._client = AsyncAzureOpenAI(
            azure_endpoint=endpoint,
            api_key=api_key,
            api_version=api_version,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 0.5)),
            max_retries=0,
        )
        self._deployment = deployment

    async def complete(self, text: str, *, system_prompt: str, max_tokens: int) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._deployment,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
                response_format={"type": "json_object"},
                temperature=0.0,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            raise ClassificationBackendError(f"{type(exc).__name__}: {exc}") from exc

        if not response.choices:
            raise ClassificationBackendError("empty choices in response")
        content = response.choices[0].message.content
        if not content:
            raise ClassificationBackendError("empty message content")

        logger.debug(
            "classification.request.completed",
            model=self._deployment,
            prompt_tokens=response.usage.prompt_tokens if response.usage else 0,
            completion_tokens=response.usage.completion_tokens if response.usage else 0,
        )
        return content

    async def close(self) -> None:
        await self._client.close()
