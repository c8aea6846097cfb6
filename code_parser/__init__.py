"""
Code parsing and indexing module.
Handles file classification, per-language parsing and symbol extraction.
"""

from .classifier import FileClassifier
from .extractors import SymbolExtractor
from .indexer import RepositoryIndex, RepositoryIndexer
from .parser import FileParseError, ParserDispatcher
from .repository import AccessDenied, LocalRepositorySource, NotFound, RepositoryAccessError

__all__ = ['FileClassifier', 'SymbolExtractor', 'RepositoryIndex', 'RepositoryIndexer',
           'FileParseError', 'ParserDispatcher', 'AccessDenied', 'LocalRepositorySource',
           'NotFound', 'RepositoryAccessError']
