"""Engimetric sync service: pulls integration activity into per-team monthly metrics."""

__version__ = "0.1.0"
