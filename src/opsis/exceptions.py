"""
Error types raised by OPSIS.

ConfigurationError and SelectionExhaustionError abort a run. ParseError and
EvalError are tolerated during bulk descriptor materialisation (the descriptor
is dropped), and an OptimizationError during a refinement sweep leaves the
constant at its prior value.
"""


class OpsisError(Exception):
    """Base class for all OPSIS errors."""


class ConfigurationError(OpsisError, ValueError):
    """Invalid parameters or degenerate input, detected before computation."""


class ParseError(OpsisError, ValueError):
    """A descriptor string does not match the descriptor grammar."""


class EvalError(OpsisError, ValueError):
    """A descriptor references a variable that cannot be resolved."""


class OptimizationError(OpsisError, RuntimeError):
    """The refinement objective is non-finite across the whole bracket."""

    def __init__(self, message, descriptor=None):
        super().__init__(message)
        self.descriptor = descriptor


class SelectionExhaustionError(OpsisError, RuntimeError):
    """No descriptor survived a screening stage."""
