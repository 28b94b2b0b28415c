"""
Common requests layer for Microsoft SQL Server.

Connect, run parameterized queries and commands, run batch scripts and
run units of work in transactions through one small API, with a single
placeholder convention (``$1, $2 ...`` or ``@name``) and plain dict rows.
See ``mssql_cr_layer.services.layer`` for usage.
"""

from .errors import (  # noqa: F401
    ArityError,
    BindingError,
    ConfigurationError,
    ExecutionError,
    MssqlCrLayerError,
    TransactionError,
    TruncationError,
)
from .services.layer import MssqlCrLayer  # noqa: F401
from .services.transaction import DEFAULT_ISOLATION_LEVEL, IsolationLevel, Transaction  # noqa: F401
from .sql.binder import Param  # noqa: F401
