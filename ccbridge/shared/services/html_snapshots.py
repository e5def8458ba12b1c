"""Per-conversation HTML snapshots and selector-based chunk extraction.

The extension uploads the page it is editing; the model later asks for
fragments of it by CSS selector (or XPath when the selector starts with
``/`` or ``(``) instead of receiving the whole document in its prompt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import lxml.etree
import lxml.html
import soupsieve
from bs4 import BeautifulSoup

from ccbridge.engine.errors import SelectorError, SnapshotNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    selector: str
    found: bool
    html: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"selector": self.selector, "found": self.found}
        if self.found:
            data["html"] = self.html
        else:
            data["error"] = self.error or "Element not found"
        return data


def is_xpath(selector: str) -> bool:
    return selector.startswith(("/", "("))


def _select_css(soup: BeautifulSoup, selector: str) -> str | None:
    try:
        element = soup.select_one(selector)
    except (soupsieve.SelectorSyntaxError, ValueError) as exc:
        raise SelectorError(selector, str(exc)) from exc
    return str(element) if element is not None else None


def _select_xpath(root: Any, selector: str) -> str | None:
    try:
        matches = root.xpath(selector)
    except lxml.etree.XPathError as exc:
        raise SelectorError(selector, str(exc)) from exc
    if not isinstance(matches, list):
        # Scalar XPath results (count(), string(), boolean()).
        return str(matches)
    if not matches:
        return None
    first = matches[0]
    if isinstance(first, str):
        return str(first)
    return lxml.html.tostring(first, encoding="unicode", with_tail=False)


def extract_chunk(html: str, selector: str) -> ChunkResult:
    """Extract the first element matching *selector* from *html*."""
    return extract_chunks(html, [selector])[0]


def extract_chunks(html: str, selectors: list[str]) -> list[ChunkResult]:
    """Extract one fragment per selector, parsing the document once."""
    soup: BeautifulSoup | None = None
    root: Any = None
    results: list[ChunkResult] = []
    for selector in selectors:
        try:
            if is_xpath(selector):
                if root is None:
                    root = lxml.html.fromstring(html)
                fragment = _select_xpath(root, selector)
            else:
                if soup is None:
                    soup = BeautifulSoup(html, "lxml")
                fragment = _select_css(soup, selector)
        except SelectorError as exc:
            logger.warning("Selector %r failed: %s", selector, exc.reason)
            results.append(ChunkResult(selector=selector, found=False, error=exc.reason))
            continue
        if fragment is None:
            results.append(ChunkResult(
                selector=selector,
                found=False,
                error=f"Element not found for selector: {selector}",
            ))
        else:
            results.append(ChunkResult(selector=selector, found=True, html=fragment))
    return results


class HtmlSnapshotStore:
    """conversation id → latest uploaded HTML document."""

    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}

    def put(self, conversation_id: str, html: str) -> None:
        self._snapshots[conversation_id] = html
        logger.info("[%s] Stored HTML snapshot (%d chars)", conversation_id, len(html))

    def get(self, conversation_id: str) -> str | None:
        return self._snapshots.get(conversation_id)

    def delete(self, conversation_id: str) -> bool:
        return self._snapshots.pop(conversation_id, None) is not None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def extract(self, conversation_id: str, selectors: list[str]) -> list[ChunkResult]:
        html = self._snapshots.get(conversation_id)
        if html is None:
            raise SnapshotNotFoundError(conversation_id)
        return extract_chunks(html, selectors)
