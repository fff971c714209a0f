"""
Integration modules for the Todoist service
"""

from .todoist import (
    Operation,
    RemoteError,
    RemoteErrorKind,
    RemoteResult,
    RetryConfig,
    TodoistClient,
)
from .cache import CacheKind, MetadataCache

__all__ = [
    'CacheKind',
    'MetadataCache',
    'Operation',
    'RemoteError',
    'RemoteErrorKind',
    'RemoteResult',
    'RetryConfig',
    'TodoistClient',
]
