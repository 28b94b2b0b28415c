"""
Statement preparation: parameter binding, type inference and row folding.
"""

from .binder import BoundInput, BoundStatement, Param, bind  # noqa: F401
from .results import fold_row, fold_rows  # noqa: F401
from .types import SqlType, infer_type  # noqa: F401
