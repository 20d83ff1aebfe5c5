"""Remote document source and async helpers shared by the sync engine."""

from .async_utils import CancellationToken, run_sync
from .client import DocumentApiClient, DocumentSource

__all__ = ["CancellationToken", "DocumentApiClient", "DocumentSource", "run_sync"]
