"""
Exceptions raised by the dawn-dusk pipeline.

Structural problems (missing columns, unmatched join keys, tree coverage gaps,
unmapped categories) stop a run. Non-convergence is raised per model so the
caller can record it and carry on with the remaining fits.
"""

from typing import Any, Dict, Optional


class DawnDuskError(Exception):
    """Base class for pipeline errors, with optional context."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context if context is not None else {}


class SchemaError(DawnDuskError, ValueError):
    """A required column is missing from an input table."""


class JoinError(DawnDuskError, ValueError):
    """Keys failed to match between two tables."""


class CoverageError(DawnDuskError, ValueError):
    """The pruned tree and the analysis species set differ."""


class RecodingError(DawnDuskError, ValueError):
    """A categorical value has no bucket under the active recoding policy."""


class ConvergenceError(DawnDuskError, RuntimeError):
    """An iterative model fit did not converge."""

    def __init__(self, message: str, last_estimate: Any = None,
                 iterations: Optional[int] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.last_estimate = last_estimate
        self.iterations = iterations


def require_columns(df, columns, table_name: str = "table") -> None:
    """Raise SchemaError if any of `columns` is absent from `df`."""
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise SchemaError(
            f"{table_name} is missing required columns: {missing}",
            context={'table': table_name, 'missing': missing}
        )
