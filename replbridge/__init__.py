"""
replbridge - stateful compute bridge manager.
"""

__version__ = "0.1.0"
__logo__ = "🔌"
