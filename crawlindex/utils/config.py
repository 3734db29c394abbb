"""
Configuration management for the crawl index pipeline.
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, fields


API_KEY_ENV_VAR = "CRAWLINDEX_SEARCH_API_KEY"


@dataclass
class CrawlerConfig:
    """Configuration for fetching and extraction."""
    user_agent: str = "DefaultCrawlerBot/1.0"
    request_timeout: float = 30.0
    max_concurrency: int = 3
    max_retries: int = 3
    retry_base_delay: float = 1.0
    dispatch_delay: float = 0.1
    content_selector: str = "body"
    prefer_main_landmark: bool = False
    max_content_size: int = 10 * 1024 * 1024


@dataclass
class IndexerConfig:
    """Configuration for batched writes to the index store."""
    type: str = "file"
    batch_size: int = 25
    max_concurrent_requests: int = 10
    max_retries: int = 10
    backoff_base: float = 1.0
    request_timeout: float = 60.0
    azure: Dict[str, Any] = field(default_factory=dict)
    file: Dict[str, Any] = field(default_factory=lambda: {'data_directory': 'data/index'})


@dataclass
class SitemapConfig:
    """Configuration for sitemap-driven crawls."""
    root_url: Optional[str] = None
    batch_size: int = 100


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawlindex.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    sitemap: SitemapConfig = field(default_factory=SitemapConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a configuration from parsed YAML, filling in defaults."""
        data = data or {}
        sections = {f.name: f for f in fields(cls)}

        unknown = set(data) - set(sections)
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        kwargs = {}
        for name, section_field in sections.items():
            section_cls = section_field.default_factory
            section_data = data.get(name) or {}
            if not isinstance(section_data, dict):
                raise ValueError(f"Configuration section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**section_data)
            except TypeError as e:
                raise ValueError(f"Invalid options in section '{name}': {e}") from e

        return cls(**kwargs)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file)

        self._config = Config.from_dict(config_data)
        self._apply_env_overrides()
        self._validate_config()
        return self._config

    def _apply_env_overrides(self):
        """Let secrets come from the environment instead of the YAML file."""
        api_key = os.environ.get(API_KEY_ENV_VAR)
        if api_key:
            self._config.indexer.azure['api_key'] = api_key

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")

        crawler = self._config.crawler
        indexer = self._config.indexer

        if crawler.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        if crawler.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        if crawler.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        if crawler.retry_base_delay < 0 or crawler.dispatch_delay < 0:
            raise ValueError("retry_base_delay and dispatch_delay must be non-negative")

        if not crawler.user_agent:
            raise ValueError("user_agent must not be empty")

        if indexer.batch_size < 1:
            raise ValueError("indexer batch_size must be at least 1")

        if indexer.request_timeout <= 0:
            raise ValueError("indexer request_timeout must be positive")

        if indexer.max_concurrent_requests < 1 or indexer.max_retries < 1:
            raise ValueError("indexer max_concurrent_requests and max_retries must be at least 1")

        if self._config.sitemap.batch_size < 1:
            raise ValueError("sitemap batch_size must be at least 1")

        # Validate index store type
        if indexer.type not in ['azure', 'file']:
            raise ValueError("Indexer type must be 'azure' or 'file'")

        if indexer.type == 'azure':
            missing = [key for key in ('endpoint', 'index_name', 'api_key')
                       if not indexer.azure.get(key)]
            if missing:
                raise ValueError(f"Azure index store requires: {', '.join(missing)}")

        if indexer.type == 'file' and not indexer.file.get('data_directory'):
            raise ValueError("File index store requires data_directory")

        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
