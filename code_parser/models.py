"""
Data model for crawled files and the symbols extracted from them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class ParseStatus(str, Enum):
    """Outcome of parsing one file."""
    OK = 'ok'
    PARTIAL = 'partial'
    FAILED = 'failed'


class SymbolKind(str, Enum):
    DECLARATION = 'declaration'
    REFERENCE = 'reference'


class DeclarationKind(str, Enum):
    """Kinds of declarations; each declaration becomes a graph node of the same kind."""
    MODULE = 'module'
    CLASS = 'class'
    FUNCTION = 'function'


class ReferenceKind(str, Enum):
    IMPORT = 'import'
    CALL = 'call'
    INHERITANCE = 'inheritance'
    INSTANTIATION = 'instantiation'


@dataclass(frozen=True)
class TargetHint:
    """
    What a reference points at, as written in the source.

    Attributes:
        kind: Reference kind (import, call, inheritance, instantiation)
        expression: Target expression as written, e.g. ``pkg.mod``, ``helper``, ``self.run``
        member: For member imports (``from pkg import name``), the imported member name
        level: Relative import level (number of leading dots), 0 for absolute imports
    """
    kind: ReferenceKind
    expression: str
    member: Optional[str] = None
    level: int = 0


@dataclass(frozen=True)
class SymbolRecord:
    """
    A declaration or a reference extracted from one file.

    ``scope`` is the chain of enclosing declaration names inside the file
    (e.g. ``('Service',)`` for a method of class ``Service``). For a reference
    it is the scope the reference was written in, so the innermost enclosing
    declaration is the source of any edge derived from it.
    """
    kind: SymbolKind
    name: str
    scope: Tuple[str, ...]
    file_path: str
    start_line: int
    end_line: int
    declaration_kind: Optional[DeclarationKind] = None
    target: Optional[TargetHint] = None
    has_docstring: bool = False

    @property
    def qualified_name(self) -> str:
        """Name qualified by its in-file scope (``Class.method``)."""
        return '.'.join(self.scope + (self.name,))

    @property
    def is_declaration(self) -> bool:
        return self.kind == SymbolKind.DECLARATION


@dataclass(frozen=True)
class SourceFile:
    """
    A crawled file and its parse outcome.

    ``language`` is None for unsupported files, in which case ``status`` is
    also None because the file was never handed to a parser.
    """
    path: str
    language: Optional[str]
    size: int
    line_count: int
    content_hash: str
    status: Optional[ParseStatus] = None
    error: Optional[str] = None

    @property
    def supported(self) -> bool:
        return self.language is not None

    @property
    def contributes_nodes(self) -> bool:
        """Whether symbols from this file may appear in the graph."""
        return self.status in (ParseStatus.OK, ParseStatus.PARTIAL)


@dataclass(frozen=True)
class ParsedTree:
    """Handle to a syntax tree; consumed only by the symbol extractor of the same file."""
    language: str
    root: Any
    text: str
    source: bytes = field(repr=False, default=b'')


@dataclass(frozen=True)
class FileSymbols:
    """Per-file extraction batch: the recorded file, its module name and its symbols in source order."""
    source_file: SourceFile
    module_name: str
    symbols: Tuple[SymbolRecord, ...] = ()

    @property
    def declarations(self) -> Tuple[SymbolRecord, ...]:
        return tuple(s for s in self.symbols if s.is_declaration)

    @property
    def references(self) -> Tuple[SymbolRecord, ...]:
        return tuple(s for s in self.symbols if not s.is_declaration)
