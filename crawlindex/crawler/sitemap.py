"""
Sitemap parsing and recursive traversal of sitemap indexes.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple, Union

from lxml import etree

from .fetcher import FetchError, WebFetcher


XML_DECLARATION = re.compile(r'^\ufeff?<\?xml[^>]*\?>')


class SitemapError(Exception):
    """The document is not a sitemap or sitemap index."""
    pass


@dataclass
class SitemapDocument:
    """A parsed sitemap: child sitemap URLs for an index, page URLs for a urlset."""
    is_index: bool
    entries: List[str] = field(default_factory=list)


def _local_name(element) -> str:
    return etree.QName(element).localname


def parse_sitemap(xml: Union[str, bytes]) -> SitemapDocument:
    """
    Parse a sitemap or sitemap index, whatever namespace it declares.

    Raises:
        SitemapError: if the XML is malformed or has another root element
    """
    if isinstance(xml, str):
        # Already decoded: the declared encoding no longer describes these bytes
        xml = XML_DECLARATION.sub('', xml.strip(), count=1).encode('utf-8')

    parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
    try:
        root = etree.fromstring(xml.strip(), parser=parser)
    except etree.XMLSyntaxError as e:
        raise SitemapError(f"Error parsing sitemap XML: {e}") from e

    root_name = _local_name(root)
    if root_name == 'sitemapindex':
        entry_name, is_index = 'sitemap', True
    elif root_name == 'urlset':
        entry_name, is_index = 'url', False
    else:
        raise SitemapError("The XML does not appear to be a valid sitemap or sitemap index.")

    entries = []
    for entry in root:
        if not isinstance(entry.tag, str) or _local_name(entry) != entry_name:
            continue
        for child in entry:
            if isinstance(child.tag, str) and _local_name(child) == 'loc':
                loc = (child.text or '').strip()
                if loc:
                    entries.append(loc)
                break

    return SitemapDocument(is_index=is_index, entries=entries)


class SitemapReader:
    """Downloads a sitemap tree and collects the page URLs of every leaf sitemap."""

    def __init__(self, fetcher: WebFetcher, request_timeout: Optional[float] = None):
        self.fetcher = fetcher
        self.request_timeout = request_timeout
        self.logger = logging.getLogger(__name__)

    async def collect(self, root_url: str) -> List[Tuple[str, List[str]]]:
        """
        Walk the sitemap tree starting at ``root_url``.

        Returns:
            (sitemap_url, page_urls) for each leaf sitemap, in discovery order.
            Sitemaps that fail to download or parse are logged and skipped.
        """
        groups: List[Tuple[str, List[str]]] = []
        await self._process(root_url, groups, set())
        return groups

    async def _process(self, url: str, groups: List[Tuple[str, List[str]]], visited: Set[str]):
        if url in visited:
            return
        visited.add(url)

        self.logger.info(f"Processing sitemap: {url}")
        try:
            result = await self.fetcher.fetch(url, self.request_timeout)
            document = parse_sitemap(result.content)
        except FetchError as e:
            self.logger.error(f"Error downloading sitemap {url}: {e}")
            return
        except SitemapError as e:
            self.logger.error(f"Error parsing sitemap {url}: {e}")
            return

        if document.is_index:
            self.logger.info(f"Processing sitemap index {url} with {len(document.entries)} sitemaps")
            for child_url in document.entries:
                await self._process(child_url, groups, visited)
        else:
            self.logger.info(f"Found {len(document.entries)} URLs in sitemap {url}")
            groups.append((url, document.entries))
