"""Post-extraction field transforms."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from .logging_config import get_logger
from .rules import FieldTransform

logger = get_logger("transforms")

_WHITESPACE = re.compile(r"\s+")
_DOLLAR_GROUP = re.compile(r"\$(\d+|&)")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def strip_html(value: str) -> str:
    if "<" not in value:
        return value.strip()
    return collapse_whitespace(BeautifulSoup(value, "lxml").get_text(" "))


def resolve_url(value: str, base_url: Optional[str]) -> str:
    if not base_url or not value:
        return value
    if value.startswith(("http://", "https://")):
        return value
    try:
        return urljoin(base_url, value.strip())
    except ValueError:
        return value


def format_name(value: str) -> str:
    """Turn "Last, First" into "First Last"; otherwise normalize whitespace."""
    trimmed = value.strip()
    if "," in trimmed:
        last, _, first = trimmed.partition(",")
        first = collapse_whitespace(first.split(",")[0])
        last = collapse_whitespace(last)
        if first and last:
            return f"{first} {last}"
    return collapse_whitespace(trimmed)


def regex_replace(value: str, params: Dict[str, str]) -> str:
    """Replace ``params["pattern"]`` with ``params["replacement"]``.

    ``replacement`` may reference groups as ``$1`` or ``\\g<1>``. ``flags``
    accepts ``g``, ``i``, ``m`` and ``s``; without ``g`` only the first match
    is replaced. Flags default to ``g``.
    """
    pattern = params.get("pattern")
    if not pattern:
        return value

    flag_letters = params.get("flags", "g")
    flags = 0
    for letter in flag_letters:
        flags |= _REGEX_FLAGS.get(letter, 0)
    count = 0 if "g" in flag_letters else 1

    replacement = params.get("replacement", "")
    replacement = _DOLLAR_GROUP.sub(
        lambda m: r"\g<0>" if m.group(1) == "&" else rf"\g<{m.group(1)}>", replacement
    )
    try:
        return re.sub(pattern, replacement, value, count=count, flags=flags)
    except re.error as exc:
        logger.warning("Invalid regex_replace pattern %r: %s", pattern, exc)
        return value


def parse_date(value: str, params: Optional[Dict[str, str]] = None) -> str:
    """Parse a date string into ISO 8601, returning it unchanged when unparseable.

    Params:
        pattern: explicit ``strptime`` format tried first.
        format: ``us`` (month first, the default) or ``eu`` (day first).
    """
    params = params or {}
    trimmed = value.strip()
    if not trimmed:
        return trimmed

    explicit = params.get("pattern")
    if explicit:
        try:
            return datetime.strptime(trimmed, explicit).isoformat()
        except ValueError:
            logger.debug("Date %r does not match pattern %r", trimmed, explicit)

    dayfirst = params.get("format", "").lower() == "eu"
    try:
        parsed = date_parser.parse(trimmed, dayfirst=dayfirst)
    except (ValueError, OverflowError):
        try:
            parsed = date_parser.parse(trimmed, dayfirst=dayfirst, fuzzy=True)
        except (ValueError, OverflowError):
            return trimmed
    return parsed.isoformat()


def apply_transform(value: str, transform: FieldTransform, base_url: Optional[str] = None) -> str:
    kind = transform.type
    if kind == "trim":
        return value.strip()
    if kind == "lowercase":
        return value.lower()
    if kind == "uppercase":
        return value.upper()
    if kind == "strip_html":
        return strip_html(value)
    if kind == "url_resolve":
        return resolve_url(value, base_url)
    if kind == "regex_replace":
        return regex_replace(value, transform.params)
    if kind == "name_format":
        return format_name(value)
    if kind == "date_parse":
        return parse_date(value, transform.params)
    return value


def apply_transforms(
    value: str,
    transforms: Iterable[FieldTransform],
    base_url: Optional[str] = None,
) -> str:
    """Apply ``transforms`` in declared order."""
    for transform in transforms:
        value = apply_transform(value, transform, base_url)
    return value
