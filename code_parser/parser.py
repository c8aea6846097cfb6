"""
Parser dispatch: routes classified files to the syntax parser for their language.
Python uses the built-in ast module; JavaScript, TypeScript and Java use Tree-sitter.
"""

import ast as python_ast
import hashlib
import logging
import threading
from typing import Callable, Dict, Iterable, Optional, Tuple

from tree_sitter_language_pack import get_parser

from .models import ParsedTree, ParseStatus, SourceFile

logger = logging.getLogger(__name__)

TREE_SITTER_LANGUAGES = ('javascript', 'typescript', 'java')

# file extensions whose dialect needs a different grammar than their language's default
EXTENSION_GRAMMARS = {'.tsx': ('typescript', 'tsx')}


class FileParseError(Exception):
    """A single file could not be parsed. Never propagates past the dispatcher."""

    def __init__(self, path: str, category: str, message: str):
        self.path = path
        self.category = category
        self.message = message
        super().__init__(f"{path}: {category}: {message}")


class ParserDispatcher:
    """Invokes the parser registered for a file's language and records the outcome."""

    def __init__(self, tree_sitter_languages: Iterable[str] = TREE_SITTER_LANGUAGES,
                 grammar_names: Optional[Dict[str, str]] = None):
        """
        Initialize parser dispatcher.

        Args:
            tree_sitter_languages: Languages parsed with Tree-sitter grammars
            grammar_names: Optional mapping of language name to grammar name in
                tree-sitter-language-pack (defaults to the language name)
        """
        self.tree_sitter_languages = list(tree_sitter_languages)
        self.grammar_names = grammar_names or {}
        self.parsers: Dict[str, Callable[[str, str, str, bytes], Tuple[ParsedTree, Optional[str]]]] = {}
        self._local = threading.local()
        self._init_parsers()

    def _init_parsers(self):
        """Register the parse function for every supported language."""
        self.parsers['python'] = self._parse_python
        for lang_name in self.tree_sitter_languages:
            self.parsers[lang_name] = self._parse_tree_sitter

    @property
    def supported_languages(self):
        return sorted(self.parsers)

    def parse(self, file_path: str, content: bytes, language: str) -> Tuple[SourceFile, Optional[ParsedTree]]:
        """
        Parse one file in isolation.

        Args:
            file_path: Repository-relative path
            content: Raw file bytes
            language: Language tag assigned by the classifier

        Returns:
            (source_file, tree). ``tree`` is None when the parse failed; for a
            partial parse the tree is the parser's best-effort recovery.
        """
        content_hash = hashlib.sha256(content).hexdigest()
        line_count = content.count(b'\n') + (1 if content and not content.endswith(b'\n') else 0)

        def record(status: ParseStatus, error: Optional[str] = None) -> SourceFile:
            return SourceFile(path=file_path, language=language, size=len(content),
                              line_count=line_count, content_hash=content_hash,
                              status=status, error=error)

        try:
            handler = self.parsers.get(language)
            if handler is None:
                raise FileParseError(file_path, 'unsupported_language', f"no parser registered for '{language}'")
            try:
                text = content.decode('utf-8')
            except UnicodeDecodeError as e:
                raise FileParseError(file_path, 'decode', str(e)) from e
            tree, partial_detail = handler(file_path, language, text, content)
        except FileParseError as e:
            logger.warning("Failed to parse %s", e)
            return record(ParseStatus.FAILED, str(e)), None
        except Exception as e:
            error = FileParseError(file_path, 'parser_error', f"{type(e).__name__}: {e}")
            logger.warning("Failed to parse %s", error)
            return record(ParseStatus.FAILED, str(error)), None

        if partial_detail:
            logger.warning("Partially parsed %s", partial_detail)
            return record(ParseStatus.PARTIAL, partial_detail), tree
        return record(ParseStatus.OK), tree

    def _parse_python(self, file_path: str, lang: str, code: str, content: bytes) -> Tuple[ParsedTree, Optional[str]]:
        """Parse Python with the built-in AST module. It has no error recovery."""
        try:
            tree = python_ast.parse(code, filename=file_path)
        except SyntaxError as e:
            raise FileParseError(file_path, 'syntax', f"line {e.lineno}: {e.msg}") from e
        except ValueError as e:
            # source containing null bytes
            raise FileParseError(file_path, 'syntax', str(e)) from e
        return ParsedTree(language='python', root=tree, text=code, source=content), None

    def _parse_tree_sitter(self, file_path: str, lang: str, code: str, content: bytes) -> Tuple[ParsedTree, Optional[str]]:
        """Parse with Tree-sitter; a tree containing ERROR or MISSING nodes is a partial parse."""
        parser = self._get_tree_sitter_parser(self._grammar_for(file_path, lang))
        tree = parser.parse(content)
        root = tree.root_node
        partial_detail = None
        if root.has_error:
            error_node = self._first_error_node(root)
            line = error_node.start_point[0] + 1 if error_node is not None else root.start_point[0] + 1
            partial_detail = str(FileParseError(file_path, 'syntax', f"recovered from error at line {line}"))
        return ParsedTree(language=lang, root=root, text=code, source=content), partial_detail

    def _grammar_for(self, file_path: str, lang: str) -> str:
        for ext, (ext_lang, grammar) in EXTENSION_GRAMMARS.items():
            if lang == ext_lang and file_path.endswith(ext):
                return grammar
        return self.grammar_names.get(lang, lang)

    def _get_tree_sitter_parser(self, grammar: str):
        """Parsers are not thread-safe, so each worker thread keeps its own, one per grammar."""
        cache = getattr(self._local, 'parsers', None)
        if cache is None:
            cache = {}
            self._local.parsers = cache
        if grammar not in cache:
            cache[grammar] = get_parser(grammar)
        return cache[grammar]

    def check_grammars(self) -> Dict[str, Optional[str]]:
        """
        Load every Tree-sitter grammar once.

        Returns:
            Mapping of language (or ``language ext`` for an extension dialect)
            to None, or to the load error.
        """
        checks = [(lang, self.grammar_names.get(lang, lang)) for lang in self.tree_sitter_languages]
        checks += [(f"{lang} {ext}", grammar) for ext, (lang, grammar) in EXTENSION_GRAMMARS.items()
                   if lang in self.tree_sitter_languages]
        results = {}
        for key, grammar in checks:
            try:
                self._get_tree_sitter_parser(grammar)
                results[key] = None
            except Exception as e:
                results[key] = f"{type(e).__name__}: {e}"
        return results

    @staticmethod
    def _first_error_node(root):
        """Find the first ERROR or MISSING node in document order."""
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == 'ERROR' or node.is_missing:
                return node
            if node.has_error:
                stack.extend(reversed(node.children))
        return None
