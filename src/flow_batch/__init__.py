"""Batch runner for remote flow executions."""

__version__ = "0.1.0"
