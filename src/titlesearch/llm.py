"""Provider backends for the AI gateway (OpenAI Responses API or Ollama)."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from openai import OpenAI

from .config import Settings
from .projects import UploadedFile

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LLMResponse:
    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class LLMBackend:
    """Dispatch one prompt (with an optional file attachment) to the configured provider."""

    def __init__(self, settings: Settings, *, openai_client: OpenAI | None = None) -> None:
        self._settings = settings
        self._openai_client = openai_client

    @property
    def settings(self) -> Settings:
        return self._settings

    def model_for(self, operation: str) -> str:
        return self._settings.model_for(operation)

    async def generate(
        self,
        operation: str,
        prompt: str,
        *,
        system: str | None = None,
        attachment: UploadedFile | None = None,
        json_schema: dict[str, Any] | None = None,
        schema_name: str = "result",
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        return await asyncio.to_thread(
            self._invoke_backend,
            operation,
            prompt,
            system=system,
            attachment=attachment,
            json_schema=json_schema,
            schema_name=schema_name,
            max_output_tokens=max_output_tokens,
        )

    def _invoke_backend(
        self,
        operation: str,
        prompt: str,
        *,
        system: str | None,
        attachment: UploadedFile | None,
        json_schema: dict[str, Any] | None,
        schema_name: str,
        max_output_tokens: int | None,
    ) -> LLMResponse:
        model = self.model_for(operation)
        if self._settings.is_openai_backend:
            logger.info("ai.backend.openai.invoke operation=%s model=%s", operation, model)
            return self._invoke_openai(
                model,
                prompt,
                system=system,
                attachment=attachment,
                json_schema=json_schema,
                schema_name=schema_name,
                max_output_tokens=max_output_tokens,
            )
        if self._settings.is_ollama_backend:
            logger.info("ai.backend.ollama.invoke operation=%s model=%s", operation, model)
            return self._invoke_ollama(
                model,
                prompt,
                system=system,
                attachment=attachment,
                json_schema=json_schema,
                max_output_tokens=max_output_tokens,
            )
        raise RuntimeError(f"Unsupported AI backend: {self._settings.ai_backend}")

    def _invoke_openai(
        self,
        model: str,
        prompt: str,
        *,
        system: str | None,
        attachment: UploadedFile | None,
        json_schema: dict[str, Any] | None,
        schema_name: str,
        max_output_tokens: int | None,
    ) -> LLMResponse:
        client = self._get_openai_client()
        content: list[dict[str, Any]] = []
        if attachment is not None:
            content.append(_openai_attachment(attachment))
        content.append({"type": "input_text", "text": prompt})

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})

        kwargs: dict[str, Any] = {
            "model": model,
            "input": messages,
            "temperature": self._settings.ai_temperature,
        }
        if max_output_tokens is not None:
            kwargs["max_output_tokens"] = max_output_tokens
        if json_schema is not None:
            kwargs["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": json_schema,
                    "strict": False,
                }
            }

        response = client.responses.create(**kwargs)
        text = str(getattr(response, "output_text", "") or "").strip()
        if not text:
            parts: list[str] = []
            for item in getattr(response, "output", None) or []:
                if getattr(item, "type", "") == "output_text":
                    parts.append(getattr(item, "text", ""))
            text = "\n".join(parts).strip()

        usage = getattr(response, "usage", None)
        result = LLMResponse(
            text=text,
            prompt_tokens=getattr(usage, "input_tokens", None),
            completion_tokens=getattr(usage, "output_tokens", None),
        )
        logger.info(
            "ai.backend.openai.success model=%s chars=%s prompt_tokens=%s completion_tokens=%s",
            model,
            len(text),
            result.prompt_tokens,
            result.completion_tokens,
        )
        return result

    def _invoke_ollama(
        self,
        model: str,
        prompt: str,
        *,
        system: str | None,
        attachment: UploadedFile | None,
        json_schema: dict[str, Any] | None,
        max_output_tokens: int | None,
    ) -> LLMResponse:
        model = (model or "").strip()
        if not model:
            raise RuntimeError("OLLAMA_MODEL must be set when using the Ollama backend")

        user_message: dict[str, Any] = {"role": "user", "content": prompt}
        if attachment is not None:
            if not attachment.mime_type.startswith("image/"):
                raise RuntimeError(
                    f"Ollama backend cannot read {attachment.mime_type or 'untyped'} attachments"
                )
            user_message["images"] = [base64.b64encode(attachment.data).decode("ascii")]

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append(user_message)

        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if json_schema is not None:
            payload["format"] = json_schema
        options: dict[str, float | int] = {}
        if self._settings.ai_temperature > 0.0:
            options["temperature"] = self._settings.ai_temperature
        if max_output_tokens is not None:
            options["num_predict"] = max_output_tokens
        if options:
            payload["options"] = options

        url = f"{self._settings.ollama_base_url.rstrip('/')}/api/chat"
        try:
            response = httpx.post(url, json=payload, timeout=self._settings.ollama_request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("ai.backend.ollama.error model=%s error=%s", model, exc)
            raise

        data = response.json()
        message = data.get("message") or {}
        content = message.get("content") or data.get("response", "")
        text = str(content).strip() if content else ""
        if not text:
            logger.warning("ai.backend.ollama.empty_response model=%s", model)
        else:
            logger.info("ai.backend.ollama.success model=%s chars=%s", model, len(text))
        return LLMResponse(
            text=text,
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )

    def _get_openai_client(self) -> OpenAI:
        if self._openai_client is None:
            if not self._settings.openai_api_key:
                raise RuntimeError("OPENAI_API_KEY must be set for the OpenAI backend")
            self._openai_client = OpenAI(api_key=self._settings.openai_api_key)
        return self._openai_client


def _openai_attachment(upload: UploadedFile) -> dict[str, Any]:
    encoded = base64.b64encode(upload.data).decode("ascii")
    data_url = f"data:{upload.mime_type};base64,{encoded}"
    if upload.mime_type.startswith("image/"):
        return {"type": "input_image", "image_url": data_url}
    return {"type": "input_file", "filename": upload.name, "file_data": data_url}


__all__ = ["LLMBackend", "LLMResponse"]
