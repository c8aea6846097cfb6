"""
Result storage module.
Durable graph/job persistence and the write-through graph cache.
"""

from .base import ResultStore, StoreError
from .cache import LRUGraphCache
from .elastic_store import ElasticResultStore
from .results import ResultRepository
from .sqlite_store import SqliteResultStore

__all__ = ['ResultStore', 'StoreError', 'LRUGraphCache', 'ElasticResultStore',
           'ResultRepository', 'SqliteResultStore']
