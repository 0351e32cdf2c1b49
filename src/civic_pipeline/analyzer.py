"""AI-assisted structural analysis of HTML pages.

The analyzer simplifies a page, asks the language model for an extraction
rule set and validates the answer before wrapping it in an (unversioned)
:class:`~civic_pipeline.models.StructuralManifest`.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, Optional

from .config import PipelineSettings
from .errors import ParseError
from .llm_client import GenerateOptions, LanguageModel
from .logging_config import get_logger
from .models import DataSourceConfig, StructuralManifest
from .prompts import PromptClient
from .rules import ExtractionRuleSet, validate_rule_set
from .structure_hasher import compute_structure_hash, parse_html, strip_comments

logger = get_logger("analyzer")

REMOVED_ELEMENTS = ("script", "style", "noscript", "svg", "iframe", "meta")

MAIN_CONTENT_SELECTORS = (
    "main",
    "#content",
    "#main-content",
    ".content",
    "article",
    "[role=main]",
)

EXCERPT_LENGTH = 200

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")


def simplify_html(html: str) -> str:
    """Strip noise from ``html`` while keeping tag structure, classes, ids and text."""
    soup = parse_html(html)

    for tag in soup.find_all(list(REMOVED_ELEMENTS)):
        tag.decompose()
    for tag in soup.select('link[rel="stylesheet"]'):
        tag.decompose()
    strip_comments(soup)

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr == "style" or attr.startswith("data-") or attr.startswith("on"):
                del tag.attrs[attr]

    root = soup.body or soup
    simplified = root.decode_contents()
    simplified = re.sub(r">\s+<", "><", simplified)
    return re.sub(r"\s{2,}", " ", simplified).strip()


def smart_truncate(html: str, max_chars: int = 12000) -> str:
    """Fit ``html`` into ``max_chars``, preferring the page's main content region."""
    if len(html) <= max_chars:
        return html

    soup = parse_html(html)
    for selector in MAIN_CONTENT_SELECTORS:
        region = soup.select_one(selector)
        if region is None:
            continue
        content = region.decode_contents()
        if not content.strip():
            continue
        logger.debug(
            "Truncating to main content %s (%d of %d chars)", selector, len(content), len(html)
        )
        return content[:max_chars]

    logger.debug("No main content region found, truncating document to %d chars", max_chars)
    return html[:max_chars]


def _balanced_object_at(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _decode_object(candidate: Optional[str]) -> Optional[Dict[str, Any]]:
    if not candidate:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_extraction_rules(text: str) -> Dict[str, Any]:
    """Decode the JSON object in a model response.

    Tolerates a surrounding markdown code fence and prose before or after the
    object.

    Raises:
        ParseError: No JSON object could be decoded.
    """
    raw = text or ""
    fenced = _FENCE_PATTERN.search(raw)
    body = fenced.group(1) if fenced else raw

    data = None
    start = body.find("{")
    while data is None and start != -1:
        data = _decode_object(_balanced_object_at(body, start))
        start = body.find("{", start + 1)
    if data is None:
        first, last = body.find("{"), body.rfind("}")
        if first != -1 and last > first:
            data = _decode_object(body[first : last + 1])

    if data is None:
        excerpt = raw[:EXCERPT_LENGTH]
        raise ParseError(f"Failed to parse LLM output as JSON: {excerpt}", excerpt=excerpt)
    return data


def estimate_confidence(rules: ExtractionRuleSet) -> float:
    """Heuristic score in [0, 1]; advisory only."""
    confidence = 0.5
    if len(rules.field_mappings) >= 3:
        confidence += 0.1
    if len(rules.field_mappings) >= 5:
        confidence += 0.1
    if any(mapping.required for mapping in rules.field_mappings):
        confidence += 0.1
    if "." in rules.container_selector or "." in rules.item_selector:
        confidence += 0.1
    if rules.analysis_notes and len(rules.analysis_notes) > 20:
        confidence += 0.1
    return min(round(confidence, 2), 1.0)


class StructuralAnalyzer:
    """Derive extraction rules for a page with a language model."""

    def __init__(
        self,
        llm: LanguageModel,
        prompts: PromptClient,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.llm = llm
        self.prompts = prompts
        self.settings = settings or PipelineSettings()

    async def analyze(self, html: str, source: DataSourceConfig) -> StructuralManifest:
        """Analyze ``html`` and return a validated, unversioned manifest.

        Raises:
            ParseError: The model response held no JSON object.
            ValidationError: The JSON was not a usable rule set.
        """
        started = time.perf_counter()
        logger.info("Analyzing structure of %s for %s", source.url, source.data_type)

        simplified = smart_truncate(simplify_html(html), self.settings.max_html_chars)
        prompt = await self.prompts.get_structural_analysis_prompt(source, simplified)

        options = GenerateOptions(
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            top_p=self.settings.top_p,
        )
        result = await self.llm.generate(prompt.prompt_text, options)

        data = parse_extraction_rules(result.text)
        rules = validate_rule_set(data).unwrap()
        confidence = estimate_confidence(rules)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Derived %d field mappings for %s (confidence %.2f, %dms)",
            len(rules.field_mappings),
            source.url,
            confidence,
            elapsed_ms,
        )
        return StructuralManifest(
            source_url=source.url,
            data_type=source.data_type,
            structure_hash=compute_structure_hash(html),
            prompt_hash=prompt.prompt_hash,
            extraction_rules=rules,
            confidence=confidence,
            llm_provider=self.llm.get_name(),
            llm_model=self.llm.get_model_name(),
            llm_tokens_used=result.tokens_used,
            analysis_time_ms=elapsed_ms,
            prompt_version=prompt.prompt_version,
        )

    async def current_prompt_hash(self, data_type: str) -> str:
        return await self.prompts.get_prompt_hash(data_type)
