"""
CalcBase - computed-field propagation engine for a multi-tenant tabular platform.

When a record or field changes, every formula, lookup and rollup field that
transitively depends on it is recomputed in dependency order by an
outbox-driven worker.
"""

__version__ = "0.1.0"
__author__ = "CalcBase Team"
__license__ = "MIT"

__all__ = ["__version__"]
