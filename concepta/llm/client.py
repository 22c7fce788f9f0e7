from __future__ import annotations

import abc
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
from loguru import logger

from concepta.exceptions import ConfigurationError, ProviderError, ValidationError
from concepta.settings import ProviderSettings

SUPPORTED_MIME_TYPES = frozenset({"application/pdf", "image/png", "image/jpeg", "image/webp"})

_MIME_ALIASES = {"image/jpg": "image/jpeg"}
_BODY_EXCERPT = 500


def _normalise_mime(mime_type: str) -> str:
    mime = (mime_type or "").strip().lower()
    mime = _MIME_ALIASES.get(mime, mime)
    if mime not in SUPPORTED_MIME_TYPES:
        raise ValidationError(
            f"Unsupported attachment type: {mime_type or '<empty>'}",
            "mime_type",
            {"supported": sorted(SUPPORTED_MIME_TYPES)},
        )
    return mime


@dataclass(frozen=True)
class Attachment:
    """Inline document or image sent alongside a prompt (base64 payload)."""

    mime_type: str
    data: str

    @classmethod
    def from_base64(
        cls,
        value: str,
        mime_type: str | None = None,
        *,
        default_mime_type: str | None = None,
    ) -> "Attachment":
        """Build from base64 text, accepting a ``data:<mime>;base64,`` prefix.

        The MIME type is taken from ``mime_type``, then the data-URL prefix,
        then ``default_mime_type``.
        """
        text = (value or "").strip()
        if text.startswith("data:") and "," in text:
            header, text = text.split(",", 1)
            declared = header[len("data:"):].split(";", 1)[0]
            if not mime_type and declared:
                mime_type = declared
        if not text:
            raise ValidationError("Attachment payload is empty", "data")
        mime_type = mime_type or default_mime_type
        if not mime_type:
            raise ValidationError("Attachment MIME type is missing", "mime_type")
        try:
            base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Attachment payload is not valid base64", "data") from exc
        return cls(mime_type=_normalise_mime(mime_type), data=text)

    @classmethod
    def from_bytes(cls, content: bytes, mime_type: str) -> "Attachment":
        if not content:
            raise ValidationError("Attachment payload is empty", "data")
        return cls(mime_type=_normalise_mime(mime_type), data=base64.b64encode(content).decode("ascii"))

    @property
    def size_bytes(self) -> int:
        return len(self.data) * 3 // 4


class CompletionClient(abc.ABC):
    """A text-completion provider. Implementations return the raw text."""

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        attachments: Sequence[Attachment] = (),
        response_schema: dict[str, Any] | None = None,
        *,
        model: str | None = None,
    ) -> str:
        raise NotImplementedError


class GeminiCompletionClient(CompletionClient):
    """Gemini ``generateContent`` over REST.

    One request per call, no retries. ``http_client`` lets callers share a
    connection pool or inject a mock transport.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        api_url: str = "https://generativelanguage.googleapis.com",
        api_version: str = "v1beta",
        timeout_seconds: float | None = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "GeminiCompletionClient":
        return cls(
            api_key=settings.api_key,
            model=settings.models.unit_mix,
            api_url=settings.api_url,
            api_version=settings.api_version,
            timeout_seconds=settings.timeout_seconds,
            http_client=http_client,
        )

    def endpoint(self, model: str) -> str:
        return f"{self.api_url}/{self.api_version}/models/{model}:generateContent"

    def build_request_body(
        self,
        prompt: str,
        attachments: Sequence[Attachment] = (),
        response_schema: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        for attachment in attachments:
            parts.append({"inline_data": {"mime_type": attachment.mime_type, "data": attachment.data}})
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if response_schema is not None:
            body["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            }
        return body

    async def complete(
        self,
        prompt: str,
        attachments: Sequence[Attachment] = (),
        response_schema: dict[str, Any] | None = None,
        *,
        model: str | None = None,
    ) -> str:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        if not self.api_key:
            raise ConfigurationError("Gemini API key is not set", {"setting": "provider.api_key_env"})

        model_id = model or self.model
        url = self.endpoint(model_id)
        body = self.build_request_body(prompt, attachments, response_schema)
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        logger.info(
            "Requesting completion from {model} ({attachments} attachments)",
            model=model_id,
            attachments=len(attachments),
        )

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, headers=headers, timeout=self._timeout())
            else:
                async with httpx.AsyncClient(timeout=self._timeout()) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Completion request failed: {exc}", {"model": model_id}) from exc

        if response.status_code // 100 != 2:
            raise ProviderError(
                f"Completion provider returned HTTP {response.status_code}",
                {"model": model_id, "status_code": response.status_code, "body": response.text[:_BODY_EXCERPT]},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Completion provider returned a non-JSON body",
                {"model": model_id, "status_code": response.status_code, "body": response.text[:_BODY_EXCERPT]},
            ) from exc

        text = self._candidate_text(payload)
        if not text.strip():
            reason = self._block_reason(payload)
            raise ProviderError(
                "Completion provider returned no text",
                {"model": model_id, "status_code": response.status_code, "reason": reason},
            )
        logger.debug("Completion from {model}: {size} chars", model=model_id, size=len(text))
        return text

    def _timeout(self) -> httpx.Timeout | float:
        if self.timeout_seconds is None:
            return httpx.Timeout(5.0)
        return self.timeout_seconds

    @staticmethod
    def _candidate_text(payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return ""
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    @staticmethod
    def _block_reason(payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            return str(feedback["blockReason"])
        candidates = payload.get("candidates") or []
        if candidates and isinstance(candidates[0], dict):
            reason = candidates[0].get("finishReason")
            return str(reason) if reason else None
        return None
