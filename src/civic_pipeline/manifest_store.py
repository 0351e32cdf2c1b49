"""Manifest persistence.

Stores keep every manifest version per ``(region_id, source_url, data_type)``
key and at most one active version. Activation is a compare-and-swap on the
expected active version: a writer that lost the race gets the winner back
instead of an exception.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from .logging_config import get_logger
from .models import ManifestKey, StructuralManifest, utc_now
from .rules import ExtractionRuleSet

logger = get_logger("manifest_store")


@dataclass
class ActivationResult:
    """Outcome of an activation attempt.

    ``manifest`` is the active manifest after the call: the new one when
    ``activated`` is true, the concurrent winner otherwise.
    """

    manifest: StructuralManifest
    activated: bool


class ManifestStore(Protocol):
    def get_active(self, key: ManifestKey) -> Optional[StructuralManifest]:
        ...

    def get(self, manifest_id: str) -> Optional[StructuralManifest]:
        ...

    def latest_version(self, key: ManifestKey) -> int:
        ...

    def activate(
        self, manifest: StructuralManifest, expected_active_version: Optional[int]
    ) -> ActivationResult:
        ...

    def record_success(self, manifest_id: str) -> Optional[StructuralManifest]:
        ...

    def record_failure(self, manifest_id: str) -> Optional[StructuralManifest]:
        ...

    def history(self, key: ManifestKey, limit: int = 10) -> List[StructuralManifest]:
        ...


def _conflicts(active: Optional[StructuralManifest], expected_active_version: Optional[int]) -> bool:
    if active is None:
        return False
    return active.version != expected_active_version


class InMemoryManifestStore:
    """Arena of manifests indexed by id with an active-version index per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._arena: Dict[str, StructuralManifest] = {}
        self._versions: Dict[ManifestKey, List[str]] = {}
        self._active: Dict[ManifestKey, str] = {}

    def get_active(self, key: ManifestKey) -> Optional[StructuralManifest]:
        with self._lock:
            manifest_id = self._active.get(key)
            return self._arena[manifest_id].copy() if manifest_id else None

    def get(self, manifest_id: str) -> Optional[StructuralManifest]:
        with self._lock:
            manifest = self._arena.get(manifest_id)
            return manifest.copy() if manifest else None

    def latest_version(self, key: ManifestKey) -> int:
        with self._lock:
            return self._latest_version(key)

    def activate(
        self, manifest: StructuralManifest, expected_active_version: Optional[int]
    ) -> ActivationResult:
        key = manifest.key
        with self._lock:
            active_id = self._active.get(key)
            active = self._arena[active_id] if active_id else None
            if _conflicts(active, expected_active_version):
                logger.info(
                    "Activation conflict for %s: expected v%s, found v%s",
                    key,
                    expected_active_version,
                    active.version,
                )
                return ActivationResult(manifest=active.copy(), activated=False)

            if active is not None:
                self._arena[active.id] = active.copy(is_active=False)

            stored = manifest.copy(version=self._latest_version(key) + 1, is_active=True)
            self._arena[stored.id] = stored
            self._versions.setdefault(key, []).append(stored.id)
            self._active[key] = stored.id
            return ActivationResult(manifest=stored.copy(), activated=True)

    def record_success(self, manifest_id: str) -> Optional[StructuralManifest]:
        with self._lock:
            manifest = self._arena.get(manifest_id)
            if manifest is None:
                return None
            now = utc_now()
            updated = manifest.copy(
                success_count=manifest.success_count + 1,
                consecutive_failures=0,
                last_used_at=now,
                last_checked_at=now,
            )
            self._arena[manifest_id] = updated
            return updated.copy()

    def record_failure(self, manifest_id: str) -> Optional[StructuralManifest]:
        with self._lock:
            manifest = self._arena.get(manifest_id)
            if manifest is None:
                return None
            updated = manifest.copy(
                failure_count=manifest.failure_count + 1,
                consecutive_failures=manifest.consecutive_failures + 1,
                last_checked_at=utc_now(),
            )
            self._arena[manifest_id] = updated
            return updated.copy()

    def history(self, key: ManifestKey, limit: int = 10) -> List[StructuralManifest]:
        with self._lock:
            ids = self._versions.get(key, [])
            return [self._arena[manifest_id].copy() for manifest_id in reversed(ids[-limit:])]

    def _latest_version(self, key: ManifestKey) -> int:
        ids = self._versions.get(key)
        return self._arena[ids[-1]].version if ids else 0


class SqliteManifestStore:
    """SQLite-backed manifest store."""

    DEFAULT_DB_PATH = Path("database/civic_pipeline.db")

    def __init__(self, db_path: Optional[Union[str, Path]] = None, auto_initialize: bool = True) -> None:
        path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.db_path = path
        if auto_initialize:
            self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Create the database directory and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            self._apply_pragmas(conn)
            self._create_schema(conn)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _apply_pragmas(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS manifests (
                id TEXT PRIMARY KEY,
                region_id TEXT NOT NULL,
                source_url TEXT NOT NULL,
                data_type TEXT NOT NULL,
                version INTEGER NOT NULL,
                structure_hash TEXT NOT NULL,
                prompt_hash TEXT NOT NULL,
                extraction_rules TEXT NOT NULL,
                confidence REAL NOT NULL,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 0,
                llm_provider TEXT,
                llm_model TEXT,
                llm_tokens_used INTEGER,
                analysis_time_ms INTEGER,
                prompt_version TEXT,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                last_checked_at TEXT,
                UNIQUE (region_id, source_url, data_type, version)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_manifests_active
                ON manifests(region_id, source_url, data_type) WHERE is_active = 1;
            CREATE INDEX IF NOT EXISTS idx_manifests_key
                ON manifests(region_id, source_url, data_type, version);
            """
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_active(self, key: ManifestKey) -> Optional[StructuralManifest]:
        with self._connect() as conn:
            row = self._active_row(conn, key)
        return self._row_to_manifest(row) if row else None

    def get(self, manifest_id: str) -> Optional[StructuralManifest]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM manifests WHERE id = ?", (manifest_id,)).fetchone()
        return self._row_to_manifest(row) if row else None

    def latest_version(self, key: ManifestKey) -> int:
        with self._connect() as conn:
            return self._latest_version(conn, key)

    def history(self, key: ManifestKey, limit: int = 10) -> List[StructuralManifest]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM manifests
                 WHERE region_id = ? AND source_url = ? AND data_type = ?
                 ORDER BY version DESC
                 LIMIT ?
                """,
                (*key, limit),
            ).fetchall()
        return [self._row_to_manifest(row) for row in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def activate(
        self, manifest: StructuralManifest, expected_active_version: Optional[int]
    ) -> ActivationResult:
        key = manifest.key
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = self._active_row(conn, key)
            active = self._row_to_manifest(row) if row else None
            if _conflicts(active, expected_active_version):
                conn.rollback()
                logger.info(
                    "Activation conflict for %s: expected v%s, found v%s",
                    key,
                    expected_active_version,
                    active.version,
                )
                return ActivationResult(manifest=active, activated=False)

            if active is not None:
                conn.execute("UPDATE manifests SET is_active = 0 WHERE id = ?", (active.id,))

            stored = manifest.copy(version=self._latest_version(conn, key) + 1, is_active=True)
            conn.execute(
                """
                INSERT INTO manifests (
                    id, region_id, source_url, data_type, version, structure_hash,
                    prompt_hash, extraction_rules, confidence, success_count,
                    failure_count, consecutive_failures, is_active, llm_provider,
                    llm_model, llm_tokens_used, analysis_time_ms, prompt_version,
                    created_at, last_used_at, last_checked_at
                ) VALUES (
                    :id, :region_id, :source_url, :data_type, :version, :structure_hash,
                    :prompt_hash, :extraction_rules, :confidence, :success_count,
                    :failure_count, :consecutive_failures, :is_active, :llm_provider,
                    :llm_model, :llm_tokens_used, :analysis_time_ms, :prompt_version,
                    :created_at, :last_used_at, :last_checked_at
                )
                """,
                self._manifest_to_row(stored),
            )
            conn.commit()
        return ActivationResult(manifest=stored, activated=True)

    def record_success(self, manifest_id: str) -> Optional[StructuralManifest]:
        now = self._to_timestamp(utc_now())
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE manifests
                   SET success_count = success_count + 1,
                       consecutive_failures = 0,
                       last_used_at = ?,
                       last_checked_at = ?
                 WHERE id = ?
                """,
                (now, now, manifest_id),
            )
            conn.commit()
        return self.get(manifest_id)

    def record_failure(self, manifest_id: str) -> Optional[StructuralManifest]:
        now = self._to_timestamp(utc_now())
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE manifests
                   SET failure_count = failure_count + 1,
                       consecutive_failures = consecutive_failures + 1,
                       last_checked_at = ?
                 WHERE id = ?
                """,
                (now, manifest_id),
            )
            conn.commit()
        return self.get(manifest_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _active_row(conn: sqlite3.Connection, key: ManifestKey) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM manifests
             WHERE region_id = ? AND source_url = ? AND data_type = ? AND is_active = 1
            """,
            tuple(key),
        ).fetchone()

    @staticmethod
    def _latest_version(conn: sqlite3.Connection, key: ManifestKey) -> int:
        row = conn.execute(
            """
            SELECT MAX(version) AS version FROM manifests
             WHERE region_id = ? AND source_url = ? AND data_type = ?
            """,
            tuple(key),
        ).fetchone()
        return int(row["version"] or 0)

    def _manifest_to_row(self, manifest: StructuralManifest) -> Dict[str, Any]:
        return {
            "id": manifest.id,
            "region_id": manifest.region_id,
            "source_url": manifest.source_url,
            "data_type": manifest.data_type,
            "version": manifest.version,
            "structure_hash": manifest.structure_hash,
            "prompt_hash": manifest.prompt_hash,
            "extraction_rules": json.dumps(manifest.extraction_rules.to_dict(), sort_keys=True),
            "confidence": manifest.confidence,
            "success_count": manifest.success_count,
            "failure_count": manifest.failure_count,
            "consecutive_failures": manifest.consecutive_failures,
            "is_active": 1 if manifest.is_active else 0,
            "llm_provider": manifest.llm_provider,
            "llm_model": manifest.llm_model,
            "llm_tokens_used": manifest.llm_tokens_used,
            "analysis_time_ms": manifest.analysis_time_ms,
            "prompt_version": manifest.prompt_version,
            "created_at": self._to_timestamp(manifest.created_at),
            "last_used_at": self._to_timestamp(manifest.last_used_at),
            "last_checked_at": self._to_timestamp(manifest.last_checked_at),
        }

    def _row_to_manifest(self, row: sqlite3.Row) -> StructuralManifest:
        return StructuralManifest(
            id=row["id"],
            region_id=row["region_id"],
            source_url=row["source_url"],
            data_type=row["data_type"],
            version=int(row["version"]),
            structure_hash=row["structure_hash"],
            prompt_hash=row["prompt_hash"],
            extraction_rules=ExtractionRuleSet.model_validate(json.loads(row["extraction_rules"])),
            confidence=float(row["confidence"]),
            success_count=int(row["success_count"]),
            failure_count=int(row["failure_count"]),
            consecutive_failures=int(row["consecutive_failures"]),
            is_active=bool(row["is_active"]),
            llm_provider=row["llm_provider"],
            llm_model=row["llm_model"],
            llm_tokens_used=row["llm_tokens_used"],
            analysis_time_ms=row["analysis_time_ms"],
            prompt_version=row["prompt_version"],
            created_at=self._from_timestamp(row["created_at"]) or utc_now(),
            last_used_at=self._from_timestamp(row["last_used_at"]),
            last_checked_at=self._from_timestamp(row["last_checked_at"]),
        )

    @staticmethod
    def _to_timestamp(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _from_timestamp(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None
