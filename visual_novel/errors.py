"""Engine error taxonomy.

Only StorageError is meant to reach the user as an actionable failure. The
others are handled inside the engine: ModelError becomes a system message,
ValidationError a fallback value or a filtered record, PreconditionError a
rejected transition with no state change.
"""


class EngineError(Exception):
    """Base class for all conversation engine errors."""


class StorageError(EngineError):
    """Raised when the persistent store cannot be read or written. Retryable."""


class ModelError(EngineError):
    """Raised when the model backend cannot be reached or returns an error."""


class ValidationError(EngineError):
    """Raised when external data (an import batch) has nothing usable in it."""


class PreconditionError(EngineError):
    """Raised when a session transition is not allowed in the current state."""
