"""
Virtual Grid Error Taxonomy

Recoverable errors are turned into rejected / skip outcomes with a reason
string by the owner; only ``InvariantViolation`` halts a symbol.
"""


class GridEngineError(Exception):
    """Base class for all virtual grid engine errors."""
    pass


class ConfigurationError(GridEngineError, ValueError):
    """Invalid spacing, leverage or capital. Fatal at construction."""
    pass


class ResourceExhausted(GridEngineError):
    """Max positions reached, below minimum order value, insufficient capital."""
    pass


class ExternalFailure(GridEngineError):
    """Order placement or price feed failure (including timeouts)."""
    pass


class InvariantViolation(GridEngineError):
    """Programming defect: negative size, unknown level status, over-committed capital."""
    pass
