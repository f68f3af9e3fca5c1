"""Persistent REPL actions on top of the bridge manager."""

from replbridge.repl.models import ReplAction, ReplRequest
from replbridge.repl.service import ReplService

__all__ = ["ReplAction", "ReplRequest", "ReplService"]
