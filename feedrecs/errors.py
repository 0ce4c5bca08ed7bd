"""Error taxonomy for the recommendation pipeline.

ProviderError and CacheError are recovered by skipping or degrading, DataError
excludes the offending item, EmptyStateError marks an expected state with a
defined fallback, ConfigError is fatal at startup only.
"""


class RecsError(Exception):
    pass


class ProviderError(RecsError):
    """Embedding provider call failed."""

    def __init__(self, message: str, *, retryable: bool = True, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class ProviderTimeout(ProviderError):
    def __init__(self, message: str = "embedding provider timed out"):
        super().__init__(message, retryable=True)


class DataError(RecsError):
    """Malformed or dimension-mismatched vector."""


class StaleModelError(DataError):
    """Vector was produced by a different reducer generation than the index."""

    def __init__(self, expected: int, got: int):
        super().__init__(f"reducer generation mismatch: index={expected} vector={got}")
        self.expected = expected
        self.got = got


class EmptyStateError(RecsError):
    pass


class InsufficientSampleError(EmptyStateError):
    def __init__(self, found: int, required: int):
        super().__init__(f"not enough valid embeddings to fit reducer: {found} < {required}")
        self.found = found
        self.required = required


class ModelNotReadyError(EmptyStateError):
    """No reducer model has been trained or loaded yet."""


class CacheError(RecsError):
    pass


class ConfigError(RecsError):
    pass
