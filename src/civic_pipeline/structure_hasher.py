"""Structural fingerprinting of HTML documents.

The skeleton keeps tag names, nesting and the ``class``/``id``/``role``
attributes. Text, links and every other attribute are dropped, so new bills or
updated meeting times leave the hash unchanged while class renames and DOM
restructuring change it.
"""

from __future__ import annotations

import hashlib
from typing import List

from bs4 import BeautifulSoup, Comment, Tag

STRUCTURAL_ATTRIBUTES = ("class", "id", "role")

NON_STRUCTURAL_ELEMENTS = (
    "script",
    "style",
    "noscript",
    "svg",
    "iframe",
    "link",
    "meta",
)


def parse_html(html: str) -> BeautifulSoup:
    """Parse HTML with the lxml tree builder."""
    return BeautifulSoup(html or "", "lxml")


def strip_comments(soup: BeautifulSoup) -> None:
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()


def extract_html_skeleton(html: str) -> str:
    """Return the structural skeleton of ``html``'s body."""
    soup = parse_html(html)

    for tag in soup.find_all(list(NON_STRUCTURAL_ELEMENTS)):
        tag.decompose()
    strip_comments(soup)

    body = soup.body
    if body is None:
        return ""
    return _skeletonize(body)


def _skeletonize(element: Tag) -> str:
    parts: List[str] = []
    for attr in STRUCTURAL_ATTRIBUTES:
        value = element.get(attr)
        if not value:
            continue
        if isinstance(value, list):
            value = " ".join(value)
        parts.append(f'{attr}="{value}"')

    attr_str = " " + " ".join(parts) if parts else ""
    children = "".join(_skeletonize(child) for child in element.children if isinstance(child, Tag))
    return f"<{element.name}{attr_str}>{children}</{element.name}>"


def compute_structure_hash(html: str) -> str:
    """SHA-256 hex digest of the document skeleton."""
    skeleton = extract_html_skeleton(html)
    return hashlib.sha256(skeleton.encode("utf-8")).hexdigest()
