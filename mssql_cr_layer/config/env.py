"""
Environment configuration loader.

This module reads the SQL Server connection defaults from environment
variables (optionally from a ``.env`` file) and exposes them via a
simple ``Config`` class.  Nothing is required: a missing variable
leaves the corresponding default in place, and per-instance or per-call
configuration passed to ``MssqlCrLayer`` always takes precedence.

Supported variables:

* ``MSSQL_URL`` – ADO style connection string (``Server=host,port;...``).
  Individual variables below override the values parsed from it.
* ``MSSQL_USER`` / ``MSSQL_PASSWORD`` – login credentials.
* ``MSSQL_HOST`` – server host name (default ``'localhost'``).
* ``MSSQL_PORT`` – TCP port (default ``1433``).
* ``MSSQL_DATABASE`` – initial catalog.
* ``MSSQL_POOL_MAX`` – maximum physical connections per pool (default ``10``).
* ``MSSQL_POOL_IDLE_TIMEOUT`` – idle timeout in milliseconds (default ``30000``).
* ``MSSQL_ISOLATION_LEVEL`` – default transaction isolation level
  (default ``'READ_COMMITTED'``).
* ``MSSQL_DRIVER`` – force ``'pymssql'`` or ``'pyodbc'``.

The resulting ``config`` instance can be imported from
``mssql_cr_layer.config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .connection import parse_connection_string

load_dotenv()


@dataclass
class Config:
    """Holds environment defaults for the connection layer."""

    MSSQL_USER: Optional[str] = None
    MSSQL_PASSWORD: Optional[str] = field(default=None, repr=False)
    MSSQL_HOST: str = "localhost"
    MSSQL_PORT: int = 1433
    MSSQL_DATABASE: Optional[str] = None
    MSSQL_POOL_MAX: int = 10
    MSSQL_POOL_IDLE_TIMEOUT: int = 30000
    MSSQL_ISOLATION_LEVEL: str = "READ_COMMITTED"
    MSSQL_DRIVER: Optional[str] = None

    def as_connection_mapping(self) -> Dict[str, Any]:
        """Return the defaults shaped like a user supplied config mapping."""
        options: Dict[str, Any] = {}
        if self.MSSQL_DRIVER:
            options['driver'] = self.MSSQL_DRIVER
        return {
            'user': self.MSSQL_USER,
            'password': self.MSSQL_PASSWORD,
            'host': self.MSSQL_HOST,
            'port': self.MSSQL_PORT,
            'database': self.MSSQL_DATABASE,
            'pool': {
                'max': self.MSSQL_POOL_MAX,
                'idleTimeout': self.MSSQL_POOL_IDLE_TIMEOUT,
            },
            'options': options,
        }


def _load_env() -> Config:
    """Load configuration from environment variables.

    Raises:
        ValueError: If a numeric variable is set to something that is not
            an integer.

    Returns:
        Config: A populated configuration dataclass.
    """

    def _int(name: str, default: int) -> int:
        raw = os.environ.get(name)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from None

    from_url: Dict[str, Any] = {}
    url = os.environ.get("MSSQL_URL")
    if url:
        from_url = parse_connection_string(url)

    return Config(
        MSSQL_USER=os.environ.get("MSSQL_USER") or from_url.get('user'),
        MSSQL_PASSWORD=os.environ.get("MSSQL_PASSWORD") or from_url.get('password'),
        MSSQL_HOST=os.environ.get("MSSQL_HOST") or from_url.get('server') or "localhost",
        MSSQL_PORT=_int("MSSQL_PORT", from_url.get('port') or 1433),
        MSSQL_DATABASE=os.environ.get("MSSQL_DATABASE") or from_url.get('database'),
        MSSQL_POOL_MAX=_int("MSSQL_POOL_MAX", 10),
        MSSQL_POOL_IDLE_TIMEOUT=_int("MSSQL_POOL_IDLE_TIMEOUT", 30000),
        MSSQL_ISOLATION_LEVEL=os.environ.get("MSSQL_ISOLATION_LEVEL", "READ_COMMITTED"),
        MSSQL_DRIVER=os.environ.get("MSSQL_DRIVER"),
    )


# Create a single configuration instance when this module is imported.
config: Config = _load_env()
