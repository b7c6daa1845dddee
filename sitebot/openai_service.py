from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any, Sequence

from openai import (
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)

from .constants import SYSTEM_PROMPT
from .models import Attachment

logger = logging.getLogger(__name__)


class CredentialError(RuntimeError):
    pass


class ServiceError(RuntimeError):
    pass


class MalformedResponseError(RuntimeError):
    pass


_FENCE_OPEN_RE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\n?")


def sanitize_document(raw_text: str) -> str:
    """Strip the code fences the model likes to wrap documents in."""
    text = _FENCE_OPEN_RE.sub("", raw_text)
    return text.replace("```", "").strip()


def _error_message(exc: Exception) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()

    message = getattr(exc, "message", None)
    if isinstance(message, str) and message.strip():
        return message.strip()

    text = str(exc).strip()
    return text or exc.__class__.__name__


class GenerationClient:
    def __init__(
        self,
        model: str,
        temperature: float = 0.7,
        max_output_tokens: int = 8000,
        max_attempts: int = 5,
        retry_delay: float = 1.0,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client_for(self, credential: str) -> AsyncOpenAI:
        client = self._clients.get(credential)
        if client is None:
            client = AsyncOpenAI(api_key=credential)
            self._clients[credential] = client
        return client

    async def _responses_create_with_retry(self, client: AsyncOpenAI, **kwargs: Any) -> Any:
        delay = self.retry_delay
        last_error: Exception | None = None

        for attempt in range(self.max_attempts):
            try:
                return await client.responses.create(**kwargs)
            except (AuthenticationError, PermissionDeniedError) as exc:
                raise CredentialError(f"Ключ API отклонен: {_error_message(exc)}") from exc
            except (RateLimitError, APITimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI transient error (%s), retry %s/%s",
                    exc.__class__.__name__,
                    attempt + 1,
                    self.max_attempts,
                )
                if attempt == self.max_attempts - 1:
                    break
                await asyncio.sleep(delay)
                delay *= 2
            except APIError as exc:
                last_error = exc
                retriable = (getattr(exc, "status_code", None) or 500) >= 500
                if not retriable or attempt == self.max_attempts - 1:
                    break
                logger.warning("OpenAI APIError retry %s/%s: %s", attempt + 1, self.max_attempts, exc)
                await asyncio.sleep(delay)
                delay *= 2

        message = _error_message(last_error) if last_error else "unknown error"
        raise ServiceError(f"API Error: {message}")

    @staticmethod
    def _extract_text(response: Any) -> str:
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text.strip():
            return output_text.strip()

        parts: list[str] = []
        output = getattr(response, "output", None)
        if output:
            for item in output:
                for content in getattr(item, "content", []) or []:
                    text = getattr(content, "text", None)
                    if isinstance(text, str) and text.strip():
                        parts.append(text.strip())
                        continue

                    if isinstance(content, dict):
                        maybe_text = content.get("text")
                        if isinstance(maybe_text, str) and maybe_text.strip():
                            parts.append(maybe_text.strip())

        if parts:
            return "\n".join(parts)

        raise MalformedResponseError(f"No text in model response ({type(response).__name__})")

    @staticmethod
    def _image_parts(attachments: Sequence[Attachment]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for attachment in attachments:
            encoded = base64.b64encode(attachment.data).decode("ascii")
            parts.append(
                {
                    "type": "input_image",
                    "image_url": f"data:{attachment.mime_type};base64,{encoded}",
                }
            )
        return parts

    async def generate(
        self,
        instruction: str,
        credential: str | None,
        attachments: Sequence[Attachment] = (),
    ) -> str:
        if not credential or not credential.strip():
            raise CredentialError("Не задан ключ API для генерации.")

        client = self._client_for(credential.strip())
        user_content: list[dict[str, Any]] = [{"type": "input_text", "text": instruction}]
        user_content.extend(self._image_parts(attachments))

        response = await self._responses_create_with_retry(
            client,
            model=self.model,
            input=[
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": SYSTEM_PROMPT}],
                },
                {
                    "role": "user",
                    "content": user_content,
                },
            ],
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

        try:
            raw_text = self._extract_text(response)
        except MalformedResponseError as exc:
            logger.warning("Malformed generation response, using empty document: %s", exc)
            return ""

        return sanitize_document(raw_text)
