"""Concurrency-safe job queue core for the content-generation pipeline."""

__version__ = "0.1.0"
