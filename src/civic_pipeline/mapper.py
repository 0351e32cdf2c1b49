"""Map raw extracted records onto typed civic records."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError as PydanticValidationError

from .domain import (
    CivicRecord,
    Committee,
    Contribution,
    Expenditure,
    IndependentExpenditure,
    Meeting,
    Proposition,
    Representative,
    infer_source_system,
)
from .errors import FieldValidationError
from .logging_config import get_logger
from .models import DataSourceConfig, DataType, ExtractionResult, RawExtractionResult

logger = get_logger("mapper")

RECORD_TYPES: Dict[str, Type[CivicRecord]] = {
    DataType.PROPOSITIONS.value: Proposition,
    DataType.MEETINGS.value: Meeting,
    DataType.REPRESENTATIVES.value: Representative,
}


def campaign_finance_record_type(category: Optional[str]) -> Type[CivicRecord]:
    """Pick the campaign finance record type for a source category."""
    lowered = (category or "").lower()
    if "committee" in lowered:
        return Committee
    if "independent" in lowered or "s496" in lowered:
        return IndependentExpenditure
    if "expenditure" in lowered:
        return Expenditure
    return Contribution


def _failure_for(exc: PydanticValidationError, index: int) -> FieldValidationError:
    first = exc.errors()[0]
    loc = first.get("loc") or ("<record>",)
    field_name = str(loc[0])
    if first.get("type") == "missing":
        reason = "missing"
    else:
        reason = f"invalid ({first.get('msg')})"
    return FieldValidationError(field_name, item_index=index, reason=reason)


class DomainMapper:
    """Validate and coerce raw records, skipping the ones that do not fit."""

    def map(self, raw: RawExtractionResult, source: DataSourceConfig) -> ExtractionResult[Any]:
        started = time.perf_counter()
        warnings = list(raw.warnings)
        errors = list(raw.errors)

        record_type = self._record_type(source)
        if record_type is None:
            logger.warning("No mapping for data type %r from %s", source.data_type, source.url)
            errors.append(f"Unknown data type: {source.data_type}")
            return ExtractionResult(
                items=[],
                success=False,
                warnings=warnings,
                errors=errors,
                extraction_time_ms=int((time.perf_counter() - started) * 1000),
                items_failed=len(raw.items),
            )

        items: List[CivicRecord] = []
        failed = 0
        for index, record in enumerate(raw.items):
            try:
                items.append(record_type.model_validate(self._enrich(record, source, record_type)))
            except PydanticValidationError as exc:
                failed += 1
                failure = _failure_for(exc, index)
                warnings.append(failure.message)
                logger.debug("%s validation failed: %s", record_type.__name__, exc)

        if failed:
            logger.info(
                "Mapped %d of %d %s records from %s",
                len(items),
                len(raw.items),
                record_type.__name__,
                source.url,
            )
        return ExtractionResult(
            items=items,
            success=len(items) > 0,
            warnings=warnings,
            errors=errors,
            extraction_time_ms=int((time.perf_counter() - started) * 1000),
            items_failed=failed,
        )

    def _record_type(self, source: DataSourceConfig) -> Optional[Type[CivicRecord]]:
        if source.data_type == DataType.CAMPAIGN_FINANCE.value:
            return campaign_finance_record_type(source.category)
        return RECORD_TYPES.get(source.data_type)

    def _enrich(
        self,
        record: Dict[str, Any],
        source: DataSourceConfig,
        record_type: Type[CivicRecord],
    ) -> Dict[str, Any]:
        enriched = dict(record)
        if record_type is Meeting and not enriched.get("body"):
            enriched["body"] = source.category or "Unknown"
        elif record_type is Representative and not enriched.get("chamber"):
            enriched["chamber"] = source.category or "Unknown"
        elif record_type in (Committee, Contribution, Expenditure, IndependentExpenditure):
            if not enriched.get("sourceSystem"):
                system = infer_source_system(source.category)
                if system:
                    enriched["sourceSystem"] = system
        return enriched
