"""Language-model capability and the Ollama adapter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .config import LLMConfig
from .errors import RemotePromptServiceError
from .http_client import HTTPClient
from .logging_config import get_logger

logger = get_logger("llm_client")


@dataclass(frozen=True)
class GenerateOptions:
    max_tokens: int = 2048
    temperature: float = 0.1
    top_p: float = 0.95


@dataclass
class GenerateResult:
    text: str
    tokens_used: Optional[int] = None
    finish_reason: Optional[str] = None


class LanguageModel(Protocol):
    """Anything that turns a prompt into text."""

    async def generate(self, prompt: str, options: GenerateOptions) -> GenerateResult:
        ...

    def get_name(self) -> str:
        ...

    def get_model_name(self) -> str:
        ...


class OllamaClient:
    """Non-streaming completions from an Ollama server via ``POST /api/generate``."""

    def __init__(self, config: Optional[LLMConfig] = None, client: Optional[HTTPClient] = None) -> None:
        self.config = config or LLMConfig()
        self.client = client or HTTPClient(
            timeout_seconds=self.config.request_timeout_seconds,
            max_retries=self.config.max_retries,
            retry_base_delay=self.config.retry_base_delay,
        )
        logger.info("Ollama client initialized: %s at %s", self.config.model, self.config.url)

    def get_name(self) -> str:
        return "Ollama"

    def get_model_name(self) -> str:
        return self.config.model

    async def generate(self, prompt: str, options: GenerateOptions) -> GenerateResult:
        logger.info("Generating completion with Ollama/%s (%d chars)", self.config.model, len(prompt))
        payload = {
            "model": self.config.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "num_predict": options.max_tokens,
                "temperature": options.temperature,
                "top_p": options.top_p,
            },
        }
        url = f"{self.config.url.rstrip('/')}/api/generate"

        try:
            response = await self.client.request_async("POST", url, json=payload)
        except httpx.HTTPStatusError as exc:
            raise RemotePromptServiceError(
                self.get_name(), exc.response.status_code, exc.response.text[:200]
            ) from exc
        except httpx.HTTPError as exc:
            raise RemotePromptServiceError(self.get_name(), None, str(exc)) from exc

        data = response.json()
        text = data.get("response") or ""
        tokens = None
        if data.get("eval_count") is not None or data.get("prompt_eval_count") is not None:
            tokens = int(data.get("eval_count") or 0) + int(data.get("prompt_eval_count") or 0)

        finish_reason = data.get("done_reason") or ("stop" if data.get("done") else "length")
        logger.info("Generated %d chars with Ollama", len(text))
        return GenerateResult(text=text, tokens_used=tokens, finish_reason=finish_reason)
