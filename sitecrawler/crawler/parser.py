"""
HTML parsing, field extraction and in-scope link extraction.
"""

import re
import logging
from typing import List, Optional, Tuple
from urllib.parse import urljoin

import soupsieve
from bs4 import BeautifulSoup

from ..utils.urls import normalize_url


class ContentParser:
    """
    Parses HTML and pulls the title and description out with CSS selectors.

    The title is the text of every element matching `title_selector`; the
    description is the `content` attribute of the first element matching
    `description_selector`.
    """

    def __init__(self, title_selector: str = "title",
                 description_selector: str = 'meta[name="description"]'):
        for selector in (title_selector, description_selector):
            try:
                soupsieve.compile(selector)
            except soupsieve.SelectorSyntaxError as e:
                raise ValueError(f"Invalid CSS selector {selector!r}: {e}") from e

        self.title_selector = title_selector
        self.description_selector = description_selector
        self.logger = logging.getLogger(__name__)
        self.whitespace_pattern = re.compile(r'\s+')

    def parse(self, html_content: str) -> BeautifulSoup:
        """Parse raw HTML into a document handle."""
        return BeautifulSoup(html_content, 'lxml')

    def extract_fields(self, document: BeautifulSoup) -> Tuple[str, Optional[str]]:
        """Return (title, description) for a parsed document."""
        title = self._clean_text(
            ''.join(element.get_text() for element in document.select(self.title_selector))
        )

        description = None
        element = document.select_one(self.description_selector)
        if element is not None:
            content = element.get('content')
            if content is not None:
                description = self._clean_text(content)

        return title, description

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())


class LinkExtractor:
    """
    Scope filter for outbound links.

    Anchors are resolved against the page URL and kept when the absolute
    form starts with the origin prefix. Both sides are compared with the
    scheme and host lower-cased, as the frontier keys are. No other
    canonicalization or deduplication is done here; the frontier's
    uniqueness constraint handles repeats.
    """

    def __init__(self, origin_prefix: str):
        self.origin_prefix = normalize_url(origin_prefix)
        self.logger = logging.getLogger(__name__)

    def extract(self, document: BeautifulSoup, base_url: str) -> List[str]:
        links = []

        for anchor in document.find_all('a', href=True):
            href = anchor['href'].strip()
            # In-page anchors point back at the current document
            if not href or href.startswith('#'):
                continue

            absolute_url = urljoin(base_url, href)
            if normalize_url(absolute_url).startswith(self.origin_prefix):
                links.append(absolute_url)

        self.logger.debug("Extracted %d in-scope links from %s", len(links), base_url)
        return links
