"""Exceptions raised by :python:`dfqtensor`.

All of them derive from a builtin exception,
so callers that do not care about the distinction can catch
:class:`ValueError` or :class:`RuntimeError`.
"""


class ConfigurationError(ValueError):
    """The object was used in a state or with options that do not allow
    the requested operation, e.g. generating MO tensors without a C matrix."""


class MetricError(ConfigurationError):
    """The fitting metric is not positive definite."""


class ResourceError(RuntimeError):
    """A buffer, a file, or another resource is missing or too small."""


class InternalConsistencyError(RuntimeError):
    """An internal invariant was violated, e.g. during reordering."""


class EvaluatorError(RuntimeError):
    """The integral evaluator could not deliver a requested block."""
