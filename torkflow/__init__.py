"""Job documents, validation, an expiring cache, health checks and an engine lifecycle for task workflows."""

__version__ = "0.1.0"

__all__ = ["cache", "health", "models", "validate", "engine"]