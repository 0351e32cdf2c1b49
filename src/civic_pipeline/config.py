"""Configuration loading for the civic extraction pipeline.

Settings come from an optional YAML file with ``CIVIC_PIPELINE_*`` environment
overrides. Region configs list the data sources to mine and are validated
before any pipeline run.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError
from .logging_config import get_logger
from .models import DataSourceConfig, DataType

logger = get_logger("config")

ENV_PREFIX = "CIVIC_PIPELINE_"


@dataclass
class FetchConfig:
    """Timeouts, retries and caching for the page fetcher."""

    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_exponential_base: float = 2.0
    retry_max_delay: float = 30.0
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 100
    min_request_interval: float = 0.5
    max_concurrent_requests: int = 4
    user_agent: str = "civic-pipeline/1.0"
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class LLMConfig:
    """Connection settings for the Ollama model server."""

    url: str = "http://localhost:11434"
    model: str = "llama3.2"
    request_timeout_seconds: float = 60.0
    max_retries: int = 2
    retry_base_delay: float = 1.0


@dataclass
class PromptServiceConfig:
    """Remote prompt service; leave ``url`` empty to use the bundled templates."""

    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0
    template_dir: Optional[Path] = None


@dataclass
class PipelineSettings:
    """Tunables for analysis, manifests, extraction and runs."""

    max_html_chars: int = 12000
    max_tokens: int = 2048
    temperature: float = 0.1
    top_p: float = 0.95
    failure_threshold: int = 3
    max_pages: int = 10
    run_timeout_seconds: float = 180.0
    max_concurrent_sources: int = 4
    db_path: Optional[Path] = None
    fetch: FetchConfig = field(default_factory=FetchConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    prompt_service: PromptServiceConfig = field(default_factory=PromptServiceConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineSettings":
        analysis = data.get("analysis", {}) or {}
        manifests = data.get("manifests", {}) or {}
        extraction = data.get("extraction", {}) or {}
        run = data.get("run", {}) or {}
        storage = data.get("storage", {}) or {}
        prompt = data.get("prompt_service", {}) or {}

        db_path = storage.get("db_path")
        template_dir = prompt.get("template_dir")
        settings = cls(
            max_html_chars=int(analysis.get("max_html_chars", 12000)),
            max_tokens=int(analysis.get("max_tokens", 2048)),
            temperature=float(analysis.get("temperature", 0.1)),
            top_p=float(analysis.get("top_p", 0.95)),
            failure_threshold=int(manifests.get("failure_threshold", 3)),
            max_pages=int(extraction.get("max_pages", 10)),
            run_timeout_seconds=float(run.get("timeout_seconds", 180.0)),
            max_concurrent_sources=int(run.get("max_concurrent_sources", 4)),
            db_path=Path(db_path) if db_path else None,
            fetch=FetchConfig(**(data.get("fetch", {}) or {})),
            llm=LLMConfig(**(data.get("llm", {}) or {})),
            prompt_service=PromptServiceConfig(
                url=prompt.get("url"),
                api_key=prompt.get("api_key"),
                timeout_seconds=float(prompt.get("timeout_seconds", 10.0)),
                template_dir=Path(template_dir) if template_dir else None,
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.max_html_chars <= 0:
            raise ConfigError("analysis.max_html_chars must be positive")
        if self.failure_threshold < 1:
            raise ConfigError("manifests.failure_threshold must be at least 1")
        if self.max_pages < 1:
            raise ConfigError("extraction.max_pages must be at least 1")
        if self.run_timeout_seconds <= 0:
            raise ConfigError("run.timeout_seconds must be positive")
        if self.prompt_service.url and not self.prompt_service.api_key:
            raise ConfigError("prompt_service.api_key is required when prompt_service.url is set")


def _apply_env_overrides(settings: PipelineSettings) -> None:
    env = os.environ
    if env.get(f"{ENV_PREFIX}OLLAMA_URL"):
        settings.llm.url = env[f"{ENV_PREFIX}OLLAMA_URL"]
    if env.get(f"{ENV_PREFIX}OLLAMA_MODEL"):
        settings.llm.model = env[f"{ENV_PREFIX}OLLAMA_MODEL"]
    if env.get(f"{ENV_PREFIX}PROMPT_SERVICE_URL"):
        settings.prompt_service.url = env[f"{ENV_PREFIX}PROMPT_SERVICE_URL"]
    if env.get(f"{ENV_PREFIX}PROMPT_SERVICE_API_KEY"):
        settings.prompt_service.api_key = env[f"{ENV_PREFIX}PROMPT_SERVICE_API_KEY"]
    if env.get(f"{ENV_PREFIX}DB_PATH"):
        settings.db_path = Path(env[f"{ENV_PREFIX}DB_PATH"])
    if env.get(f"{ENV_PREFIX}RUN_TIMEOUT_SECONDS"):
        settings.run_timeout_seconds = float(env[f"{ENV_PREFIX}RUN_TIMEOUT_SECONDS"])
    if env.get(f"{ENV_PREFIX}FAILURE_THRESHOLD"):
        settings.failure_threshold = int(env[f"{ENV_PREFIX}FAILURE_THRESHOLD"])


def load_settings(config_path: Optional[Union[str, Path]] = None) -> PipelineSettings:
    """Load settings from YAML (if present) and apply environment overrides.

    Args:
        config_path: Path to a settings YAML. Falls back to the
            ``CIVIC_PIPELINE_CONFIG`` env var; a missing file yields defaults.

    Returns:
        Validated PipelineSettings.
    """
    path_value = config_path or os.environ.get(f"{ENV_PREFIX}CONFIG")
    data: Dict[str, Any] = {}
    if path_value:
        path = Path(path_value)
        if path.exists():
            logger.info("Loading settings from %s", path)
            with open(path, "r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        else:
            logger.warning("Settings file %s not found, using defaults", path)

    try:
        settings = PipelineSettings.from_dict(data)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc
    _apply_env_overrides(settings)
    settings.validate()
    return settings


# ----------------------------------------------------------------------
# Region configuration
# ----------------------------------------------------------------------

_REGION_ID_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")


class _DataSourceSchema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str = Field(min_length=1)
    data_type: DataType = Field(alias="dataType")
    content_goal: str = Field(alias="contentGoal", min_length=10)
    category: Optional[str] = None
    hints: List[str] = Field(default_factory=list)
    source_type: str = Field(default="html_scrape", alias="sourceType")
    rate_limit_override: Optional[float] = Field(default=None, alias="rateLimitOverride", gt=0)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("Invalid URL format")
        return value


class _RegionSchema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    region_id: str = Field(alias="regionId", min_length=1)
    region_name: str = Field(alias="regionName", min_length=1)
    description: str = Field(min_length=1)
    timezone: str = Field(min_length=1)
    data_sources: List[_DataSourceSchema] = Field(alias="dataSources", min_length=1)

    @field_validator("region_id")
    @classmethod
    def _region_id_format(cls, value: str) -> str:
        if not _REGION_ID_PATTERN.match(value):
            raise ValueError(
                "Region ID must be lowercase alphanumeric with hyphens, starting with a letter"
            )
        return value


@dataclass
class ConfigIssue:
    """One problem found in a region config."""

    path: str
    message: str


@dataclass
class RegionConfig:
    """A validated region and the sources to mine for it."""

    region_id: str
    region_name: str
    description: str
    timezone: str
    data_sources: List[DataSourceConfig] = field(default_factory=list)


def validate_region_config(data: Any) -> List[ConfigIssue]:
    """Return every schema and semantic problem in a raw region config."""
    try:
        region = _RegionSchema.model_validate(data)
    except PydanticValidationError as exc:
        return [
            ConfigIssue(
                path=".".join(str(part) for part in error.get("loc", ())),
                message=error.get("msg", "invalid value"),
            )
            for error in exc.errors()
        ]

    issues: List[ConfigIssue] = []
    seen = set()
    for index, source in enumerate(region.data_sources):
        key = (source.url, source.data_type.value, source.category or "")
        if key in seen:
            label = f" ({source.category})" if source.category else ""
            issues.append(
                ConfigIssue(
                    path=f"dataSources[{index}]",
                    message=f"Duplicate data source: {source.url} for {source.data_type.value}{label}",
                )
            )
        seen.add(key)
        if source.url.startswith("http://"):
            issues.append(
                ConfigIssue(
                    path=f"dataSources[{index}].url",
                    message="URL should use HTTPS for government websites",
                )
            )
    return issues


def parse_region_config(data: Dict[str, Any]) -> RegionConfig:
    """Validate a raw region mapping and convert it, raising ConfigError on problems."""
    issues = validate_region_config(data)
    if issues:
        details = "; ".join(f"{issue.path}: {issue.message}" for issue in issues)
        raise ConfigError(f"Invalid region config: {details}")

    region = _RegionSchema.model_validate(data)
    return RegionConfig(
        region_id=region.region_id,
        region_name=region.region_name,
        description=region.description,
        timezone=region.timezone,
        data_sources=[
            DataSourceConfig(
                url=source.url,
                data_type=source.data_type.value,
                content_goal=source.content_goal,
                category=source.category,
                hints=tuple(source.hints),
                source_type=source.source_type,
                rate_limit_override=source.rate_limit_override,
            )
            for source in region.data_sources
        ],
    )


def load_region_config(path: Union[str, Path]) -> RegionConfig:
    """Load and validate a region config YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Region config not found: {config_path}")
    with open(config_path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    region = parse_region_config(data)
    logger.info("Loaded region %s with %d data sources", region.region_id, len(region.data_sources))
    return region
