"""Shared fixtures for the civic pipeline tests."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

import pytest

from civic_pipeline.analyzer import StructuralAnalyzer
from civic_pipeline.config import PipelineSettings
from civic_pipeline.manifest_manager import ManifestManager
from civic_pipeline.manifest_store import InMemoryManifestStore
from civic_pipeline.models import DataSourceConfig, StructuralManifest
from civic_pipeline.pipeline import PipelineOrchestrator
from civic_pipeline.rules import ExtractionRuleSet

from fakes import DATA_DIR, MEMBERS_URL, FakeLLM, FakePromptClient


@pytest.fixture
def members_html() -> str:
    return (DATA_DIR / "members.html").read_text(encoding="utf-8")


@pytest.fixture
def members_rules() -> Dict[str, Any]:
    return json.loads((DATA_DIR / "members_rules.json").read_text(encoding="utf-8"))


@pytest.fixture
def member_source() -> DataSourceConfig:
    return DataSourceConfig(
        url=MEMBERS_URL,
        data_type="representatives",
        content_goal="Extract every current Assembly member",
        category="Assembly",
        hints=("Members are listed as cards",),
    )


@pytest.fixture
def make_manifest(members_rules) -> Callable[..., StructuralManifest]:
    def factory(rules: Optional[Dict[str, Any]] = None, **overrides: Any) -> StructuralManifest:
        data: Dict[str, Any] = {
            "source_url": MEMBERS_URL,
            "data_type": "representatives",
            "structure_hash": "structure-1",
            "prompt_hash": "prompt-v1",
            "extraction_rules": ExtractionRuleSet.model_validate(rules or members_rules),
            "confidence": 0.9,
            "region_id": "california",
        }
        data.update(overrides)
        return StructuralManifest(**data)

    return factory


@pytest.fixture
def fake_llm(members_rules) -> FakeLLM:
    return FakeLLM([json.dumps(members_rules)])


@pytest.fixture
def prompt_client() -> FakePromptClient:
    return FakePromptClient()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(run_timeout_seconds=5.0)


@pytest.fixture
def build_orchestrator(prompt_client, settings):
    """Wire an orchestrator around fakes; returns ``(orchestrator, store)``."""

    def factory(llm, fetcher, store=None, metrics_sink=None, **overrides):
        for name, value in overrides.items():
            setattr(settings, name, value)
        store = store or InMemoryManifestStore()
        analyzer = StructuralAnalyzer(llm, prompt_client, settings)
        manager = ManifestManager(store, analyzer, failure_threshold=settings.failure_threshold)
        orchestrator = PipelineOrchestrator(
            fetcher,
            manager,
            settings=settings,
            metrics_sink=metrics_sink,
        )
        return orchestrator, store

    return factory
