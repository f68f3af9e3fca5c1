"""Utility functions for replbridge."""

from replbridge.utils.helpers import atomic_write_json, ensure_dir, utc_now_iso

__all__ = ["atomic_write_json", "ensure_dir", "utc_now_iso"]
