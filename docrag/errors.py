"""Error taxonomy for the chunking and RAG pipeline."""


class DocragError(Exception):
    """Base class for all docrag errors."""


class ConfigurationError(DocragError, ValueError):
    """Invalid strategy name, chunk size or overlap, or provider selection."""


class ProviderError(DocragError):
    """An embedding or generation provider call failed."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message)
        self.operation = operation


class ProviderTimeoutError(ProviderError):
    """A provider call (or vector search) exceeded its timeout."""


class DataIntegrityError(DocragError):
    """A write would violate a store invariant and was rejected."""


class NotFoundError(DocragError):
    """A referenced record does not exist."""


class IndexUnavailableError(DocragError):
    """The named vector index is absent or could not be loaded."""


class StoreUnavailableError(DocragError):
    """The persistent store cannot be reached."""
