"""Manifest versioning, caching and self-healing.

For each ``(region_id, source_url, data_type)`` key the manager decides
whether the active manifest can be reused or the page must be analyzed again,
and it is the only component that activates manifests.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from .analyzer import StructuralAnalyzer
from .logging_config import get_logger
from .manifest_store import ManifestStore
from .models import DataSourceConfig, ManifestKey, StructuralManifest
from .structure_hasher import compute_structure_hash

logger = get_logger("manifest_manager")

NO_MANIFEST = "no_manifest"
STRUCTURE_CHANGED = "structure_changed"
PROMPT_CHANGED = "prompt_changed"
BOTH_CHANGED = "both_changed"


@dataclass
class ComparisonResult:
    can_reuse: bool
    reason: Optional[str] = None
    structure_changed: bool = False
    prompt_changed: bool = False


def compare_manifest(
    existing: Optional[StructuralManifest],
    structure_hash: str,
    prompt_hash: str,
) -> ComparisonResult:
    """Decide whether ``existing`` still fits the page and the current prompt."""
    if existing is None:
        return ComparisonResult(can_reuse=False, reason=NO_MANIFEST)

    structure_changed = existing.structure_hash != structure_hash
    prompt_changed = existing.prompt_hash != prompt_hash
    if structure_changed and prompt_changed:
        reason: Optional[str] = BOTH_CHANGED
    elif structure_changed:
        reason = STRUCTURE_CHANGED
    elif prompt_changed:
        reason = PROMPT_CHANGED
    else:
        reason = None
    return ComparisonResult(
        can_reuse=reason is None,
        reason=reason,
        structure_changed=structure_changed,
        prompt_changed=prompt_changed,
    )


@dataclass
class ManifestResolution:
    """The manifest a run should use and how it was obtained."""

    manifest: StructuralManifest
    cache_hit: bool = False
    structure_changed: bool = False
    prompt_changed: bool = False
    analyzed: bool = False
    self_healed: bool = False
    analysis_ms: Optional[int] = None


class ManifestManager:
    """Resolve, activate and track manifests per key."""

    def __init__(
        self,
        store: ManifestStore,
        analyzer: StructuralAnalyzer,
        failure_threshold: int = 3,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.failure_threshold = failure_threshold
        self._locks: Dict[ManifestKey, asyncio.Lock] = {}
        self._lock_users: Dict[ManifestKey, int] = {}

    @asynccontextmanager
    async def _locked(self, key: ManifestKey) -> AsyncIterator[None]:
        """Hold the per-key lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def resolve(self, region_id: str, source: DataSourceConfig, html: str) -> ManifestResolution:
        """Return the active manifest for ``source``, analyzing the page when needed."""
        key = ManifestKey(region_id, source.url, source.data_type)
        async with self._locked(key):
            structure_hash = compute_structure_hash(html)
            prompt_hash = await self.analyzer.current_prompt_hash(source.data_type)
            active = self.store.get_active(key)
            comparison = compare_manifest(active, structure_hash, prompt_hash)

            if comparison.can_reuse:
                if active.consecutive_failures < self.failure_threshold:
                    logger.debug("Reusing manifest v%d for %s", active.version, key)
                    return ManifestResolution(manifest=active, cache_hit=True)
                logger.warning(
                    "Manifest v%d for %s failed %d times in a row, re-analyzing",
                    active.version,
                    key,
                    active.consecutive_failures,
                )
                return await self._analyze_and_activate(key, source, html, active, self_healed=True)

            logger.info("Analysis needed for %s: %s", key, comparison.reason)
            resolution = await self._analyze_and_activate(key, source, html, active)
            resolution.structure_changed = comparison.structure_changed
            resolution.prompt_changed = comparison.prompt_changed
            return resolution

    async def force_reanalysis(
        self,
        region_id: str,
        source: DataSourceConfig,
        html: str,
        stale_version: Optional[int],
    ) -> ManifestResolution:
        """Re-analyze after a failed run unless another run already replaced ``stale_version``."""
        key = ManifestKey(region_id, source.url, source.data_type)
        async with self._locked(key):
            active = self.store.get_active(key)
            if active is not None and active.version != stale_version:
                logger.info("Adopting manifest v%d for %s instead of re-analyzing", active.version, key)
                return ManifestResolution(manifest=active, self_healed=True)
            return await self._analyze_and_activate(key, source, html, active, self_healed=True)

    def record_success(self, manifest: StructuralManifest) -> Optional[StructuralManifest]:
        return self.store.record_success(manifest.id)

    def record_failure(self, manifest: StructuralManifest) -> Optional[StructuralManifest]:
        updated = self.store.record_failure(manifest.id)
        if updated is not None:
            logger.warning(
                "Manifest v%d for %s failed (%d consecutive)",
                updated.version,
                updated.key,
                updated.consecutive_failures,
            )
        return updated

    def get_active(self, key: ManifestKey) -> Optional[StructuralManifest]:
        return self.store.get_active(key)

    def history(self, key: ManifestKey, limit: int = 10) -> List[StructuralManifest]:
        return self.store.history(key, limit)

    async def _analyze_and_activate(
        self,
        key: ManifestKey,
        source: DataSourceConfig,
        html: str,
        active: Optional[StructuralManifest],
        self_healed: bool = False,
    ) -> ManifestResolution:
        started = time.perf_counter()
        analyzed = await self.analyzer.analyze(html, source)
        analysis_ms = int((time.perf_counter() - started) * 1000)

        expected_version = active.version if active else None
        result = self.store.activate(analyzed.copy(region_id=key.region_id), expected_version)
        if result.activated:
            logger.info(
                "Activated manifest v%d for %s (confidence %.2f)",
                result.manifest.version,
                key,
                result.manifest.confidence,
            )
        else:
            logger.info("Lost activation race for %s, using v%d", key, result.manifest.version)

        return ManifestResolution(
            manifest=result.manifest,
            analyzed=True,
            self_healed=self_healed,
            analysis_ms=analysis_ms,
        )
