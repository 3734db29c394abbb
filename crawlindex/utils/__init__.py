"""
Utility modules for the crawl index pipeline.
"""

from .config import Config, ConfigManager, load_config, get_config

__all__ = ['Config', 'ConfigManager', 'load_config', 'get_config']
