"""
Inbound crawl request payloads: ``{"source": ..., "urls": [...]}``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List


class InvalidCrawlRequestError(ValueError):
    """The payload cannot be turned into a crawl."""
    pass


@dataclass
class CrawlRequest:
    """A validated request to crawl a list of URLs under a source label."""
    source: str
    urls: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'CrawlRequest':
        """Validate a decoded payload. Blank URL entries are dropped."""
        if not isinstance(payload, dict):
            raise InvalidCrawlRequestError("Request body must be a JSON object")

        urls = payload.get('urls')
        if not isinstance(urls, list):
            raise InvalidCrawlRequestError("Please provide an array of URLs in the request body.")

        urls = [url.strip() for url in urls if isinstance(url, str) and url.strip()]
        if not urls:
            raise InvalidCrawlRequestError("Please provide an array of URLs in the request body.")

        source = payload.get('source')
        if not isinstance(source, str) or not source.strip():
            raise InvalidCrawlRequestError("Please provide a source label in the request body.")

        return cls(source=source.strip(), urls=urls)

    @classmethod
    def from_json(cls, body: str) -> 'CrawlRequest':
        try:
            payload = json.loads(body) if body else None
        except json.JSONDecodeError as e:
            raise InvalidCrawlRequestError(f"Error parsing JSON: {e}") from e
        return cls.from_dict(payload)

    def to_dict(self) -> Dict[str, Any]:
        return {'source': self.source, 'urls': list(self.urls)}
