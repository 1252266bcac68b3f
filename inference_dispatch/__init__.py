"""Resilient dispatch of inference requests across a pool of HTTP endpoints."""

__version__ = "0.1.0"
