"""
Expose the loaded environment defaults as ``config``.

Importing from this module will load environment variables and
populate a singleton ``Config`` instance. Example:

    from mssql_cr_layer.config import config
    print(config.MSSQL_HOST)
"""

from .connection import ConnectionConfig, build_connection_config, parse_connection_string  # noqa: F401
from .env import config, Config  # noqa: F401
