"""Pipeline orchestrator.

One run fetches a page, resolves its manifest, extracts and maps records,
updates the manifest counters and emits :class:`PipelineMetrics` exactly once.
A failed first attempt gets exactly one forced re-analysis before the error
reaches the caller.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from .analyzer import StructuralAnalyzer
from .config import PipelineSettings
from .errors import (
    ExtractionError,
    ParseError,
    PipelineError,
    PipelineTimeoutError,
    ValidationError,
)
from .extractor import ManifestExtractor, PageFetcher
from .http_client import HTTPFetcher
from .llm_client import OllamaClient
from .logging_config import get_logger
from .manifest_manager import ManifestManager, ManifestResolution
from .manifest_store import InMemoryManifestStore, ManifestStore, SqliteManifestStore
from .mapper import DomainMapper
from .models import (
    DataSourceConfig,
    ManifestKey,
    PipelineMetrics,
    PipelineRun,
    StructuralManifest,
)
from .prompts import create_prompt_client
from .validator import ExtractionValidator

logger = get_logger("pipeline")
metrics_logger = get_logger("metrics")

MetricsSink = Callable[[PipelineMetrics], None]

# Item-count baselines kept for the validator's drop check, least recently used evicted first.
MAX_TRACKED_SOURCES = 1024


@dataclass
class SourceOutcome:
    """Result of one source in :meth:`PipelineOrchestrator.run_many`."""

    source: DataSourceConfig
    run: Optional[PipelineRun] = None
    error: Optional[PipelineError] = None

    @property
    def success(self) -> bool:
        return self.run is not None and self.run.result.success


class PipelineOrchestrator:
    """Sequence fetch, manifest resolution, extraction and mapping per source."""

    def __init__(
        self,
        fetcher: PageFetcher,
        manager: ManifestManager,
        *,
        extractor: Optional[ManifestExtractor] = None,
        mapper: Optional[DomainMapper] = None,
        validator: Optional[ExtractionValidator] = None,
        settings: Optional[PipelineSettings] = None,
        metrics_sink: Optional[MetricsSink] = None,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.fetcher = fetcher
        self.manager = manager
        self.extractor = extractor or ManifestExtractor(max_pages=self.settings.max_pages)
        self.mapper = mapper or DomainMapper()
        self.validator = validator or ExtractionValidator()
        self.metrics_sink = metrics_sink
        self._item_counts: OrderedDict[ManifestKey, int] = OrderedDict()

    async def run_pipeline(self, region_id: str, source: DataSourceConfig) -> PipelineRun:
        """Run one source end to end.

        Raises:
            PipelineError: The run failed even after one forced re-analysis,
                or exceeded ``run_timeout_seconds``. ``error.metrics`` holds
                the run's telemetry.
        """
        metrics = PipelineMetrics(
            region_id=region_id,
            source_url=source.url,
            data_type=source.data_type,
        )
        timeout = self.settings.run_timeout_seconds
        try:
            return await asyncio.wait_for(self._run(region_id, source, metrics), timeout=timeout)
        except asyncio.TimeoutError as exc:
            error = PipelineTimeoutError(f"Pipeline run for {source.url} exceeded {timeout:g}s")
            metrics.error = error.message
            error.metrics = metrics
            raise error from exc
        except PipelineError as exc:
            metrics.error = exc.message
            exc.metrics = metrics
            raise
        except Exception as exc:
            metrics.error = str(exc) or type(exc).__name__
            raise
        finally:
            self._emit(metrics)

    async def run_many(
        self,
        region_id: str,
        sources: Sequence[DataSourceConfig],
    ) -> List[SourceOutcome]:
        """Run ``sources`` concurrently, bounded by ``max_concurrent_sources``."""
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_sources))

        async def run_one(source: DataSourceConfig) -> SourceOutcome:
            async with semaphore:
                try:
                    run = await self.run_pipeline(region_id, source)
                except PipelineError as exc:
                    logger.error("Source %s failed: %s", source.url, exc.message)
                    return SourceOutcome(source=source, error=exc)
                return SourceOutcome(source=source, run=run)

        outcomes = await asyncio.gather(*(run_one(source) for source in sources))
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        logger.info("Region %s: %d of %d sources succeeded", region_id, succeeded, len(outcomes))
        return list(outcomes)

    async def _run(self, region_id: str, source: DataSourceConfig, metrics: PipelineMetrics) -> PipelineRun:
        key = ManifestKey(region_id, source.url, source.data_type)
        fetched = await self.fetcher.fetch_url(source.url)
        html = fetched.content

        prior = self.manager.get_active(key)
        stale_version = prior.version if prior else None
        first_error: Optional[PipelineError] = None
        try:
            resolution = await self.manager.resolve(region_id, source, html)
        except (ParseError, ValidationError) as exc:
            logger.warning("Analysis failed for %s: %s", source.url, exc.message)
            first_error = exc
        else:
            self._apply_resolution(metrics, resolution)
            stale_version = resolution.manifest.version
            outcome = await self._attempt(key, html, resolution.manifest, source, metrics)
            if isinstance(outcome, PipelineRun):
                return outcome
            first_error = outcome
            self.manager.record_failure(resolution.manifest)

        logger.warning("Self-healing %s after: %s", source.url, first_error.message)
        metrics.self_heal_triggered = True
        try:
            resolution = await self.manager.force_reanalysis(region_id, source, html, stale_version)
        except (ParseError, ValidationError):
            if prior is not None and metrics.manifest_version is None:
                self.manager.record_failure(prior)
            raise
        self._apply_resolution(metrics, resolution)

        outcome = await self._attempt(key, html, resolution.manifest, source, metrics, final=True)
        if isinstance(outcome, PipelineRun):
            return outcome
        self.manager.record_failure(resolution.manifest)
        raise outcome

    async def _attempt(
        self,
        key: ManifestKey,
        html: str,
        manifest: StructuralManifest,
        source: DataSourceConfig,
        metrics: PipelineMetrics,
        final: bool = False,
    ) -> Union[PipelineRun, ExtractionError]:
        """Extract and map with ``manifest``; return a PipelineRun or the run-level error.

        Validator errors only fail a first attempt. On the ``final`` attempt a
        result that still has items is mapped and returned, with the errors
        carried as warnings and a failure recorded against the manifest.
        """
        started = time.perf_counter()
        raw = await self.extractor.extract_pages(html, manifest, self.fetcher, source.url)
        if raw.failure is not None:
            metrics.extraction_ms = int((time.perf_counter() - started) * 1000)
            metrics.items_failed = len(raw.dropped)
            return raw.failure

        report = self.validator.validate(raw, manifest, self._item_counts.get(key))
        if not report.valid and not final:
            metrics.extraction_ms = int((time.perf_counter() - started) * 1000)
            metrics.items_failed = len(raw.dropped)
            return ExtractionError(
                f"Extraction validation failed: {'; '.join(report.errors)}",
                kind=ExtractionError.NO_VALID_ITEMS,
            )

        result = self.mapper.map(raw, source)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result.manifest_version = manifest.version
        result.extraction_time_ms = elapsed_ms
        result.warnings.extend(report.errors)

        metrics.extraction_ms = elapsed_ms
        metrics.items_extracted = len(result.items)
        metrics.items_failed = len(raw.dropped) + result.items_failed
        metrics.manifest_version = manifest.version

        if result.success and report.valid:
            self.manager.record_success(manifest)
        else:
            self.manager.record_failure(manifest)
        if raw.items:
            self._remember_item_count(key, len(raw.items))
        logger.info(
            "Extracted %d %s records from %s with manifest v%d",
            len(result.items),
            source.data_type,
            source.url,
            manifest.version,
        )
        return PipelineRun(result=result, metrics=metrics)

    def _remember_item_count(self, key: ManifestKey, count: int) -> None:
        self._item_counts[key] = count
        self._item_counts.move_to_end(key)
        while len(self._item_counts) > MAX_TRACKED_SOURCES:
            self._item_counts.popitem(last=False)

    @staticmethod
    def _apply_resolution(metrics: PipelineMetrics, resolution: ManifestResolution) -> None:
        metrics.manifest_cache_hit = resolution.cache_hit
        metrics.self_heal_triggered = metrics.self_heal_triggered or resolution.self_healed
        metrics.structure_changed = metrics.structure_changed or resolution.structure_changed
        metrics.prompt_changed = metrics.prompt_changed or resolution.prompt_changed
        metrics.manifest_version = resolution.manifest.version
        if resolution.analyzed:
            manifest = resolution.manifest
            metrics.structure_analysis_ms = (metrics.structure_analysis_ms or 0) + (resolution.analysis_ms or 0)
            metrics.llm_provider = manifest.llm_provider
            metrics.llm_model = manifest.llm_model
            metrics.llm_tokens_used = (metrics.llm_tokens_used or 0) + (manifest.llm_tokens_used or 0)

    def _emit(self, metrics: PipelineMetrics) -> None:
        metrics_logger.info(json.dumps(metrics.to_dict(), sort_keys=True))
        if self.metrics_sink is None:
            return
        try:
            self.metrics_sink(metrics)
        except Exception:
            logger.exception("Metrics sink failed for %s", metrics.source_url)


def create_store(settings: PipelineSettings) -> ManifestStore:
    if settings.db_path:
        return SqliteManifestStore(settings.db_path)
    return InMemoryManifestStore()


def create_orchestrator(
    settings: Optional[PipelineSettings] = None,
    *,
    store: Optional[ManifestStore] = None,
    metrics_sink: Optional[MetricsSink] = None,
) -> PipelineOrchestrator:
    """Wire the shipped adapters together from settings."""
    settings = settings or PipelineSettings()
    analyzer = StructuralAnalyzer(
        OllamaClient(settings.llm),
        create_prompt_client(settings.prompt_service),
        settings,
    )
    manager = ManifestManager(
        store or create_store(settings),
        analyzer,
        failure_threshold=settings.failure_threshold,
    )
    return PipelineOrchestrator(
        HTTPFetcher(settings.fetch),
        manager,
        settings=settings,
        metrics_sink=metrics_sink,
    )
