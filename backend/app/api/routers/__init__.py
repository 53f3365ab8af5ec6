"""Router exports for FastAPI composition."""

from . import health, pipeline, webhook

__all__ = ["health", "pipeline", "webhook"]
