# HTTP API for batches, verification and reconciliation.
from .routes import router

__all__ = ["router"]
