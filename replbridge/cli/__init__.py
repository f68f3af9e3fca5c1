"""Command-line interface for replbridge."""
