"""
Content extractor: turns raw markup into title, main text, HTML fragment and meta tags.
"""

import re
import logging
from typing import Dict, Optional
from dataclasses import dataclass, field
from bs4 import BeautifulSoup, Comment


# Nodes whose text would pollute the readable content
NON_CONTENT_TAGS = ["script", "style", "svg", "path"]

_NEWLINES = re.compile(r'(\r\n|\n)+')
_SPACES = re.compile(r'[ \t]+')


def normalize_whitespace(text: Optional[str]) -> str:
    """Collapse newline runs to one newline, space/tab runs to one space, then trim."""
    if not text:
        return ""

    text = _NEWLINES.sub('\n', text)
    text = _SPACES.sub(' ', text)
    return text.strip()


@dataclass
class PageContent:
    """Container for content extracted from a page."""
    title: str = ""
    main_text: str = ""
    html_fragment: str = ""
    meta_tags: Dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.main_text or self.meta_tags)


class ContentParser:
    """
    Parses HTML into the fields that get indexed.

    The main text comes from the first element matching ``content_selector``
    (the document body by default). With ``prefer_main_landmark`` set, a
    ``<main>`` element is used instead whenever the page has one.
    """

    def __init__(self, content_selector: str = "body", prefer_main_landmark: bool = False,
                 features: str = "lxml"):
        self.content_selector = content_selector
        self.prefer_main_landmark = prefer_main_landmark
        self.features = features
        self.logger = logging.getLogger(__name__)

    def extract(self, raw_markup: Optional[str]) -> PageContent:
        """
        Extract title, main text, HTML fragment and meta tags.

        Never raises on bad markup: whatever cannot be extracted is left empty.
        """
        if not raw_markup:
            return PageContent()

        try:
            soup = BeautifulSoup(raw_markup, self.features)

            for element in soup(NON_CONTENT_TAGS):
                # <path> usually sits inside an <svg> that is already gone
                if not element.decomposed:
                    element.decompose()

            for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
                comment.extract()

            content = PageContent(
                title=self._extract_title(soup),
                meta_tags=self._extract_meta_tags(soup),
            )
            self._extract_main_content(soup, content)

            self.logger.debug(f"Extracted {len(content.main_text)} chars of text, "
                              f"{len(content.meta_tags)} meta tags")
            return content

        except Exception as e:
            self.logger.warning(f"Error extracting content from markup: {e}")
            return PageContent()

    def _extract_title(self, soup: BeautifulSoup) -> str:
        """Text of the first <title> element."""
        title_tag = soup.find('title')
        if title_tag is None:
            return ""
        return normalize_whitespace(title_tag.get_text())

    def _extract_meta_tags(self, soup: BeautifulSoup) -> Dict[str, str]:
        """
        Map every <meta> name (or property, when name is absent) to its content.

        Keys are case-folded. Entries with an empty key or content are skipped
        and later duplicates overwrite earlier ones.
        """
        meta_tags: Dict[str, str] = {}

        for meta in soup.find_all('meta'):
            name = meta.get('name')
            if name is None:
                name = meta.get('property')
            content = meta.get('content')

            if not name or not content:
                continue

            key = name.strip().lower()
            if key:
                meta_tags[key] = content

        return meta_tags

    def _extract_main_content(self, soup: BeautifulSoup, content: PageContent):
        """Fill main_text and html_fragment from the content anchor element."""
        element = None
        if self.prefer_main_landmark:
            element = soup.find('main')

        if element is None:
            element = soup.select_one(self.content_selector)

        if element is None:
            self.logger.debug(f"No element matches content selector '{self.content_selector}'")
            return

        content.main_text = normalize_whitespace(element.get_text())
        content.html_fragment = element.decode_contents()
