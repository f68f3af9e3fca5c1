"""Configuration module for replbridge."""

from replbridge.config.loader import load_config, get_config_path
from replbridge.config.schema import Config
from replbridge.config.access import get_config, clear_config_cache

__all__ = ["Config", "load_config", "get_config_path", "get_config", "clear_config_cache"]
