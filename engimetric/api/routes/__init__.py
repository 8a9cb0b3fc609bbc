"""API route modules."""

from engimetric.api.routes import health, integrations, metrics

__all__ = ["health", "integrations", "metrics"]
