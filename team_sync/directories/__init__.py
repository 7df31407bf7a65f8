"""
Directory integrations for Team Sync.

Each module in this package provides a DirectoryClient subclass; the module is
selected by the ``directory.module`` configuration key.
"""

import importlib
import logging
from typing import Any, Dict

from .base import (
    DirectoryClient,
    DirectoryError,
    DirectoryAuthenticationError,
    HTTPDirectoryClient,
    SyncCancelled,
)

logger = logging.getLogger(__name__)

__all__ = [
    'DirectoryClient',
    'DirectoryError',
    'DirectoryAuthenticationError',
    'HTTPDirectoryClient',
    'SyncCancelled',
    'load_directory_client',
]


def load_directory_client(config: Dict[str, Any], cancel_event=None) -> DirectoryClient:
    """
    Dynamically load a directory module and create its client.

    Args:
        config: Directory configuration; ``module`` names the module in this package
        cancel_event: Cancellation event passed to the client

    Returns:
        Directory client instance

    Raises:
        DirectoryError: If the module cannot be imported or has no client class
    """
    module_name = config.get('module', 'github')
    try:
        module = importlib.import_module(f"{__name__}.{module_name}")
    except ImportError as e:
        raise DirectoryError(f"Failed to import directory module {module_name}: {e}")

    client_class = None
    for attr_name in dir(module):
        attr = getattr(module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, DirectoryClient) and
                attr.__module__ == module.__name__):
            client_class = attr
            break

    if client_class is None:
        raise DirectoryError(f"No DirectoryClient subclass found in module {module_name}")

    logger.debug(f"Using directory client {client_class.__name__}")
    return client_class(config, cancel_event=cancel_event)
