"""
Request services: the ``MssqlCrLayer`` facade and transaction handling.
"""

from .layer import MssqlCrLayer  # noqa: F401
from .transaction import IsolationLevel, Transaction, TransactionState  # noqa: F401
