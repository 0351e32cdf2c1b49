"""Deterministic extraction of records from HTML using a manifest's rules.

No model calls happen here: the engine only applies CSS selectors, extraction
methods and transforms from an :class:`~civic_pipeline.rules.ExtractionRuleSet`.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from .errors import ExtractionError, FieldValidationError, PipelineError
from .logging_config import get_logger
from .models import RawExtractionResult, StructuralManifest
from .rules import FieldMapping, PaginationRule, PreprocessingStep
from .structure_hasher import parse_html
from .transforms import apply_transforms, collapse_whitespace

logger = get_logger("extractor")


class PageFetcher(Protocol):
    async def fetch_url(self, url: str) -> Any:
        ...


def apply_preprocessing(soup: BeautifulSoup, step: PreprocessingStep) -> None:
    """Rewrite the DOM in place for one preprocessing step."""
    try:
        matches = soup.select(step.selector)
    except SelectorSyntaxError:
        logger.warning("Skipping %s: invalid selector %r", step.type, step.selector)
        return

    if step.type == "remove_elements":
        for tag in matches:
            tag.decompose()
    elif step.type == "unwrap_elements":
        for tag in matches:
            tag.unwrap()
    elif step.type == "merge_tables" and len(matches) > 1:
        first = matches[0]
        target = first.find("tbody") or first
        for table in matches[1:]:
            for row in table.find_all("tr"):
                target.append(row.extract())
            table.decompose()


class ManifestExtractor:
    """Apply a manifest's extraction rules to HTML."""

    def __init__(self, max_pages: int = 10) -> None:
        self.max_pages = max_pages

    def extract(
        self,
        html: str,
        manifest: StructuralManifest,
        base_url: Optional[str] = None,
    ) -> RawExtractionResult:
        rules = manifest.extraction_rules
        base_url = base_url or manifest.source_url
        warnings: List[str] = []

        soup = parse_html(html)
        for step in rules.preprocessing:
            apply_preprocessing(soup, step)

        try:
            containers = soup.select(rules.container_selector)
        except SelectorSyntaxError:
            containers = []
            warnings.append(f"Invalid container selector: {rules.container_selector}")
        if not containers:
            logger.warning("Container not found: %r for %s", rules.container_selector, manifest.source_url)
            return RawExtractionResult.failed(
                ExtractionError(
                    f"Container not found: {rules.container_selector}",
                    kind=ExtractionError.CONTAINER_NOT_FOUND,
                ),
                warnings,
            )
        if len(containers) > 1:
            warnings.append(
                f'Multiple containers found ({len(containers)}) for "{rules.container_selector}", using first'
            )

        try:
            elements = containers[0].select(rules.item_selector)
        except SelectorSyntaxError:
            elements = []
            warnings.append(f"Invalid item selector: {rules.item_selector}")
        if not elements:
            logger.warning(
                "No items found: %r within %r for %s",
                rules.item_selector,
                rules.container_selector,
                manifest.source_url,
            )
            return RawExtractionResult.failed(
                ExtractionError(
                    f"No items found: {rules.item_selector} within {rules.container_selector}",
                    kind=ExtractionError.NO_ITEMS,
                ),
                warnings,
            )

        items: List[Dict[str, Any]] = []
        dropped: List[FieldValidationError] = []
        for index, element in enumerate(elements):
            data, missing = self._extract_item(element, rules.field_mappings, base_url)
            if missing:
                for field_name in missing:
                    error = FieldValidationError(field_name, item_index=index)
                    dropped.append(error)
                    warnings.append(error.message)
                continue
            items.append(data)

        logger.debug("Extracted %d of %d items from %s", len(items), len(elements), manifest.source_url)

        if not items:
            failure = ExtractionError(
                f"No valid items: all {len(elements)} items missing required fields",
                kind=ExtractionError.NO_VALID_ITEMS,
            )
            result = RawExtractionResult.failed(failure, warnings)
            result.dropped = dropped
            return result

        return RawExtractionResult(items=items, success=True, warnings=warnings, dropped=dropped)

    async def extract_pages(
        self,
        html: str,
        manifest: StructuralManifest,
        fetcher: PageFetcher,
        base_url: Optional[str] = None,
    ) -> RawExtractionResult:
        """Extract the first page and follow the manifest's pagination rule."""
        base_url = base_url or manifest.source_url
        result = self.extract(html, manifest, base_url)
        pagination = manifest.extraction_rules.pagination

        if pagination is None or pagination.type == "none" or not result.success:
            return result
        if pagination.type == "load_more":
            result.warnings.append("Pagination type load_more cannot be followed on static HTML")
            return result

        limit = min(pagination.max_pages, self.max_pages)
        visited = {base_url}
        current_html, current_url = html, base_url

        for page in range(2, limit + 1):
            next_url = self._next_page_url(pagination, current_html, current_url, base_url, page)
            if not next_url or next_url in visited:
                break
            visited.add(next_url)

            try:
                fetched = await fetcher.fetch_url(next_url)
            except PipelineError as exc:
                result.warnings.append(f"Pagination stopped at page {page}: {exc.message}")
                break

            page_result = self.extract(fetched.content, manifest, next_url)
            if not page_result.success:
                result.warnings.append(f"Pagination stopped at page {page}: {'; '.join(page_result.errors)}")
                break

            result.items.extend(page_result.items)
            result.warnings.extend(page_result.warnings)
            result.dropped.extend(page_result.dropped)
            result.pages_fetched += 1
            current_html, current_url = fetched.content, next_url

        if result.pages_fetched > 1:
            logger.info("Followed %d pages for %s", result.pages_fetched, manifest.source_url)
        return result

    def _extract_item(
        self,
        element: Tag,
        mappings: List[FieldMapping],
        base_url: Optional[str],
    ) -> Tuple[Dict[str, Any], List[str]]:
        data: Dict[str, Any] = {}
        missing: List[str] = []
        for mapping in mappings:
            value = self._extract_value(element, mapping)
            if value:
                value = apply_transforms(value, mapping.transform, base_url)
            if not value and mapping.default_value is not None:
                value = mapping.default_value
            if value:
                data[mapping.field_name] = value
            elif mapping.required:
                missing.append(mapping.field_name)
        return data, missing

    def _extract_value(self, element: Tag, mapping: FieldMapping) -> Optional[str]:
        if mapping.selector:
            try:
                node = element.select_one(mapping.selector)
            except SelectorSyntaxError:
                logger.debug("Invalid field selector %r for %s", mapping.selector, mapping.field_name)
                return None
            if node is None:
                return None
        else:
            node = element

        method = mapping.extraction_method
        if method == "text":
            return collapse_whitespace(node.get_text()) or None
        if method == "attribute":
            value = node.get(mapping.attribute)
            if isinstance(value, list):
                value = " ".join(value)
            return value.strip() if value else None
        if method == "html":
            return node.decode_contents().strip() or None
        if method == "regex":
            return self._regex_value(node.get_text(), mapping)
        return None

    def _regex_value(self, text: str, mapping: FieldMapping) -> Optional[str]:
        try:
            pattern = re.compile(mapping.regex_pattern)
        except re.error:
            logger.debug("Invalid regex %r for %s", mapping.regex_pattern, mapping.field_name)
            return None
        match = pattern.search(text)
        if match is None:
            return None
        group = mapping.regex_group
        if group is None:
            group = 1 if pattern.groups else 0
        if group > pattern.groups:
            return None
        value = match.group(group)
        return value.strip() if value else None

    def _next_page_url(
        self,
        pagination: PaginationRule,
        html: str,
        current_url: str,
        base_url: str,
        page: int,
    ) -> Optional[str]:
        if pagination.type == "next_link":
            if not pagination.next_selector:
                return None
            try:
                link = parse_html(html).select_one(pagination.next_selector)
            except SelectorSyntaxError:
                return None
            href = link.get("href") if link is not None else None
            return urljoin(current_url, href) if href else None
        if pagination.type == "url_pattern":
            if not pagination.url_pattern or "{page}" not in pagination.url_pattern:
                return None
            return urljoin(base_url, pagination.url_pattern.replace("{page}", str(page)))
        return None
