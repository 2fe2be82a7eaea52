"""Disposable PostgreSQL servers and postgres_exporter processes for integration tests."""

__version__ = "0.1.0"