"""Batch image generation with bounded concurrency, retries and local downloads."""

__version__ = "0.1.0"
