"""Prompt-template capability.

:class:`LocalPromptClient` renders the Jinja2 templates shipped with the
package. :class:`RemotePromptClient` asks a prompt service for the rendered
prompt instead. Both report a ``prompt_hash`` that changes whenever the
template text for a data type changes, which invalidates cached manifests.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, Union

import httpx
from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from .config import PromptServiceConfig
from .errors import ConfigError, RemotePromptServiceError
from .http_client import HTTPClient
from .logging_config import get_logger
from .models import DataSourceConfig

logger = get_logger("prompts")

TEMPLATE_DIR = Path(__file__).parent / "templates"
BASE_TEMPLATE = "structural_analysis.txt.j2"
DEFAULT_SCHEMA = "schema_default.txt"
PROMPT_VERSION = "v1"


@dataclass
class PromptResponse:
    prompt_text: str
    prompt_hash: str
    prompt_version: Optional[str] = None


class PromptClient(Protocol):
    async def get_structural_analysis_prompt(self, source: DataSourceConfig, html: str) -> PromptResponse:
        ...

    async def get_prompt_hash(self, data_type: str) -> str:
        ...


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LocalPromptClient:
    """Render structural-analysis prompts from package templates."""

    def __init__(self, template_dir: Optional[Union[str, Path]] = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._sources: Dict[str, str] = {}

    async def get_structural_analysis_prompt(self, source: DataSourceConfig, html: str) -> PromptResponse:
        schema_name, schema_text = self._schema_for(source.data_type)
        template = self.jinja_env.get_template(BASE_TEMPLATE)
        prompt_text = template.render(
            data_type=source.data_type,
            content_goal=source.content_goal,
            category=source.category or "",
            hints=list(source.hints),
            schema_description=schema_text.strip(),
            html=html,
        )
        logger.debug("Rendered %s with %s (%d chars)", BASE_TEMPLATE, schema_name, len(prompt_text))
        return PromptResponse(
            prompt_text=prompt_text,
            prompt_hash=self._hash_for(schema_text),
            prompt_version=PROMPT_VERSION,
        )

    async def get_prompt_hash(self, data_type: str) -> str:
        _, schema_text = self._schema_for(data_type)
        return self._hash_for(schema_text)

    def clear_cache(self) -> None:
        self._sources.clear()

    def _hash_for(self, schema_text: str) -> str:
        return _sha256(self._source(BASE_TEMPLATE) + "\n" + schema_text)

    def _schema_for(self, data_type: str) -> Tuple[str, str]:
        name = f"schema_{data_type}.txt"
        try:
            return name, self._source(name)
        except TemplateNotFound:
            logger.warning("No schema template for %s, using %s", data_type, DEFAULT_SCHEMA)
            return DEFAULT_SCHEMA, self._source(DEFAULT_SCHEMA)

    def _source(self, name: str) -> str:
        if name not in self._sources:
            source, _, _ = self.jinja_env.loader.get_source(self.jinja_env, name)
            self._sources[name] = source
        return self._sources[name]


class RemotePromptClient:
    """Fetch rendered prompts from a remote prompt service."""

    SERVICE_NAME = "Prompt service"

    def __init__(self, config: PromptServiceConfig, client: Optional[HTTPClient] = None) -> None:
        if not config.url:
            raise ConfigError("Prompt service URL is required for RemotePromptClient")
        if not config.api_key:
            raise ConfigError("API key is required when prompt service URL is configured")
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.client = client or HTTPClient(timeout_seconds=config.timeout_seconds, max_retries=1)

    async def get_structural_analysis_prompt(self, source: DataSourceConfig, html: str) -> PromptResponse:
        payload = {
            "dataType": source.data_type,
            "contentGoal": source.content_goal,
            "category": source.category,
            "hints": list(source.hints),
            "html": html,
        }
        data = await self._request("POST", "/prompts/structural-analysis", json=payload)
        try:
            return PromptResponse(
                prompt_text=data["promptText"],
                prompt_hash=data["promptHash"],
                prompt_version=data.get("promptVersion"),
            )
        except KeyError as exc:
            raise RemotePromptServiceError(
                self.SERVICE_NAME, 200, f"response missing {exc.args[0]}"
            ) from exc

    async def get_prompt_hash(self, data_type: str) -> str:
        data = await self._request(
            "GET", "/prompts/structural-analysis/hash", params={"dataType": data_type}
        )
        prompt_hash = data.get("promptHash")
        if not prompt_hash:
            raise RemotePromptServiceError(self.SERVICE_NAME, 200, "response missing promptHash")
        return prompt_hash

    async def _request(self, method: str, path: str, **kwargs) -> Dict:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        try:
            response = await self.client.request_async(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPStatusError as exc:
            raise RemotePromptServiceError(
                self.SERVICE_NAME, exc.response.status_code, exc.response.reason_phrase
            ) from exc
        except httpx.HTTPError as exc:
            raise RemotePromptServiceError(self.SERVICE_NAME, None, str(exc)) from exc
        return response.json()


def create_prompt_client(config: PromptServiceConfig) -> PromptClient:
    """Remote client when a service URL is configured, bundled templates otherwise."""
    if config.url:
        return RemotePromptClient(config)
    return LocalPromptClient(config.template_dir)
