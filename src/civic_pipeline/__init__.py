"""Civic pipeline package namespace."""

from importlib import import_module
from typing import Any

__all__ = [
    "PipelineOrchestrator",
    "create_orchestrator",
    "ManifestManager",
    "InMemoryManifestStore",
    "SqliteManifestStore",
    "StructuralAnalyzer",
    "ManifestExtractor",
    "DomainMapper",
    "DataSourceConfig",
    "PipelineSettings",
    "load_settings",
    "load_region_config",
]

_EXPORTS = {
    "PipelineOrchestrator": "pipeline",
    "create_orchestrator": "pipeline",
    "ManifestManager": "manifest_manager",
    "InMemoryManifestStore": "manifest_store",
    "SqliteManifestStore": "manifest_store",
    "StructuralAnalyzer": "analyzer",
    "ManifestExtractor": "extractor",
    "DomainMapper": "mapper",
    "DataSourceConfig": "models",
    "PipelineSettings": "config",
    "load_settings": "config",
    "load_region_config": "config",
}


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)


def __dir__() -> list[str]:
    return sorted(__all__)
