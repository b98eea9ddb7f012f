"""Gateway API route building, readiness probing and reconcile logic for ingress rules."""

__version__ = "0.1.0"
__all__ = ["models", "reconcile", "resources", "status"]