"""Quality checks on raw extraction results."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

from .logging_config import get_logger
from .models import RawExtractionResult, StructuralManifest

logger = get_logger("validator")

ERROR = "error"
WARNING = "warning"


@dataclass
class ValidationIssue:
    severity: str
    message: str


@dataclass
class ValidationReport:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> List[str]:
        return [issue.message for issue in self.issues if issue.severity == ERROR]

    @property
    def warnings(self) -> List[str]:
        return [issue.message for issue in self.issues if issue.severity == WARNING]


class ExtractionValidator:
    """Flag extraction results that suggest the manifest no longer fits the page."""

    def __init__(
        self,
        missing_error_ratio: float = 0.5,
        missing_warning_ratio: float = 0.1,
        drop_error_ratio: float = 0.5,
        drop_warning_ratio: float = 0.8,
    ) -> None:
        self.missing_error_ratio = missing_error_ratio
        self.missing_warning_ratio = missing_warning_ratio
        self.drop_error_ratio = drop_error_ratio
        self.drop_warning_ratio = drop_warning_ratio

    def validate(
        self,
        result: RawExtractionResult,
        manifest: StructuralManifest,
        previous_item_count: Optional[int] = None,
    ) -> ValidationReport:
        report = ValidationReport()

        if not result.items:
            report.issues.append(ValidationIssue(ERROR, "Zero items extracted"))

        self._check_required_coverage(result, manifest, report)
        self._check_item_count_drift(result, previous_item_count, report)

        if len(result.warnings) > len(result.items) * 2:
            report.issues.append(
                ValidationIssue(
                    WARNING,
                    f"High warning count: {len(result.warnings)} warnings for {len(result.items)} items",
                )
            )

        if not report.valid:
            logger.warning(
                "Extraction validation failed for %s: %s",
                manifest.source_url,
                "; ".join(report.errors),
            )
        return report

    def _check_required_coverage(
        self,
        result: RawExtractionResult,
        manifest: StructuralManifest,
        report: ValidationReport,
    ) -> None:
        required = manifest.extraction_rules.required_fields
        if not required or not result.dropped:
            return

        dropped_items = {error.item_index for error in result.dropped}
        total = len(result.items) + len(dropped_items)
        missing = Counter(error.field_name for error in result.dropped)

        for field_name in required:
            count = missing.get(field_name, 0)
            ratio = count / total
            message = (
                f'Required field "{field_name}" missing in {round(ratio * 100)}% of items ({count}/{total})'
            )
            if ratio > self.missing_error_ratio:
                report.issues.append(ValidationIssue(ERROR, message))
            elif ratio > self.missing_warning_ratio:
                report.issues.append(ValidationIssue(WARNING, message))

    def _check_item_count_drift(
        self,
        result: RawExtractionResult,
        previous_item_count: Optional[int],
        report: ValidationReport,
    ) -> None:
        if not previous_item_count or not result.items:
            return

        count = len(result.items)
        ratio = count / previous_item_count
        detail = f"{count} vs previous {previous_item_count} ({round(ratio * 100)}%)"
        if ratio < self.drop_error_ratio:
            report.issues.append(ValidationIssue(ERROR, f"Item count dropped dramatically: {detail}"))
        elif ratio < self.drop_warning_ratio:
            report.issues.append(ValidationIssue(WARNING, f"Item count decreased: {detail}"))
