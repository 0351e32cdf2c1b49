"""Command-line runner: mine every data source of a region config once."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_region_config, load_settings
from .errors import ConfigError
from .logging_config import get_logger, setup_logging
from .pipeline import SourceOutcome, create_orchestrator

logger = get_logger("runner")


@dataclass
class SourceSummary:
    url: str
    data_type: str
    category: Optional[str]
    success: bool
    items: int = 0
    items_failed: int = 0
    manifest_version: Optional[int] = None
    cache_hit: bool = False
    self_heal_triggered: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: SourceOutcome) -> "SourceSummary":
        source = outcome.source
        if outcome.run is None:
            metrics = outcome.error.metrics if outcome.error else None
            return cls(
                url=source.url,
                data_type=source.data_type,
                category=source.category,
                success=False,
                manifest_version=metrics.manifest_version if metrics else None,
                self_heal_triggered=bool(metrics and metrics.self_heal_triggered),
                error=outcome.error.message if outcome.error else "unknown error",
            )

        result, metrics = outcome.run.result, outcome.run.metrics
        return cls(
            url=source.url,
            data_type=source.data_type,
            category=source.category,
            success=result.success,
            items=len(result.items),
            items_failed=metrics.items_failed,
            manifest_version=result.manifest_version,
            cache_hit=metrics.manifest_cache_hit,
            self_heal_triggered=metrics.self_heal_triggered,
            warnings=list(result.warnings),
            error="; ".join(result.errors) or None,
        )


@dataclass
class RunSummary:
    region_id: str
    sources: List[SourceSummary] = field(default_factory=list)
    records: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def successful_sources(self) -> int:
        return sum(1 for source in self.sources if source.success)

    def exit_code(self) -> int:
        if not self.sources or self.successful_sources == len(self.sources):
            return 0
        return 2 if self.successful_sources else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region_id": self.region_id,
            "total_sources": len(self.sources),
            "successful_sources": self.successful_sources,
            "sources": [asdict(source) for source in self.sources],
            "records": self.records,
        }


def build_summary(region_id: str, outcomes: List[SourceOutcome]) -> RunSummary:
    summary = RunSummary(region_id=region_id)
    for outcome in outcomes:
        summary.sources.append(SourceSummary.from_outcome(outcome))
        if outcome.run is not None:
            summary.records[outcome.source.url] = [item.to_dict() for item in outcome.run.result.items]
    return summary


async def run_region(args: argparse.Namespace) -> RunSummary:
    settings = load_settings(args.settings)
    if args.db_path:
        settings.db_path = args.db_path
    region = load_region_config(args.region_config)

    orchestrator = create_orchestrator(settings)
    outcomes = await orchestrator.run_many(region.region_id, region.data_sources)
    return build_summary(region.region_id, outcomes)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the civic pipeline runner."""
    parser = argparse.ArgumentParser(
        description="Civic pipeline runner - extract structured civic records for every source of a region"
    )
    parser.add_argument(
        "--region-config",
        type=Path,
        required=True,
        help="Path to the region configuration YAML file",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        help="Path to pipeline settings YAML (default: CIVIC_PIPELINE_CONFIG or built-in defaults)",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Persist manifests in this SQLite database (default: in-memory)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        help="Write the run summary and extracted records to this JSON file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to this file (default: logs/civic_pipeline.log)",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        help="Write per-run metrics as JSON lines to this file instead of the main log",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)

    setup_logging(
        log_file=args.log_file,
        metrics_file=args.metrics_file,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        summary = asyncio.run(run_region(args))
    except ConfigError as exc:
        logger.error(f"Configuration error: {exc.message}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1

    logger.info(
        f"Run summary: {summary.successful_sources}/{len(summary.sources)} sources successful"
    )
    for source in summary.sources:
        if not source.success:
            logger.warning(f"Failed source: {source.url} ({source.error})")

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as handle:
            json.dump(summary.to_dict(), handle, indent=2)
        logger.info(f"Wrote summary to {args.output}")

    return summary.exit_code()


if __name__ == "__main__":
    sys.exit(main())
