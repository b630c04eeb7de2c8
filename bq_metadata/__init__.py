"""
BigQuery Metadata API Package
FastAPI facade exposing BigQuery datasets, tables and schemas with per-session credentials
"""

__version__ = "1.0.0"
__description__ = "BigQuery metadata browser API with session-scoped service accounts"
