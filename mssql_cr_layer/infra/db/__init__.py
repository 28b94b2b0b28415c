"""
Database access for SQL Server connections.

This subpackage wraps either the ``pymssql`` or ``pyodbc`` driver
(``mssql``), pools physical connections per config (``pool``) and keeps
one pool per connection key (``connection_factory``).
"""

from .mssql import PhysicalConnection, open_connection  # noqa: F401
from .pool import ConnectionPool  # noqa: F401
from .connection_factory import ConnectionManager  # noqa: F401
