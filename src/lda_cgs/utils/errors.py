"""lda_cgs.utils.errors
======================

Exception types raised across the package.

* :class:`ConfigError` – bad hyper-parameters, dimensions or run settings.
  Always raised before any sampling starts.
* :class:`FatalParseError` – a numeric corpus field could not be parsed.
* :class:`InvariantViolation` – the count tables and the assignment table
  disagree.  This is a bug, not a user error, and is never caught inside
  the package.
"""

from __future__ import annotations

__all__ = [
    "ConfigError",
    "FatalParseError",
    "InvariantViolation",
]


class ConfigError(ValueError):
    """Invalid model, corpus or sampler configuration."""


class FatalParseError(ValueError):
    """A doc id, word id or count field is not a non-negative integer."""

    def __init__(self, message: str, *, line_no: int | None = None, field: str | None = None):
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)
        self.line_no = line_no
        self.field = field


class InvariantViolation(RuntimeError):
    """Sufficient statistics no longer match the topic assignments."""

    def __init__(self, message: str, **context):
        if context:
            details = ", ".join(f"{k}={v}" for k, v in context.items())
            message = f"{message} ({details})"
        super().__init__(message)
        self.context = context
