"""
File classification: maps crawled paths to a language tag.
"""

from pathlib import PurePosixPath
from typing import Dict, Iterable, Optional


DEFAULT_LANGUAGE_MAP = {
    '.py': 'python',
    '.pyi': 'python',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.java': 'java',
}

DEFAULT_SHEBANG_MAP = {
    'python': 'python',
    'node': 'javascript',
}


class FileClassifier:
    """Assigns a language tag from a fixed registry, or None for unsupported files."""

    def __init__(self, language_map: Dict[str, str], supported_languages: Iterable[str],
                 shebang_map: Optional[Dict[str, str]] = None):
        """
        Initialize file classifier.

        Args:
            language_map: Mapping of file extensions (with leading dot) to language names
            supported_languages: Languages that have a registered parser
            shebang_map: Mapping of interpreter name fragments to language names,
                used to sniff extensionless scripts
        """
        self.language_map = {ext.lower(): lang for ext, lang in language_map.items()}
        self.supported_languages = set(supported_languages)
        self.shebang_map = shebang_map if shebang_map is not None else DEFAULT_SHEBANG_MAP

    def classify(self, file_path: str, content: Optional[bytes] = None) -> Optional[str]:
        """
        Determine the language of a file.

        Args:
            file_path: Repository-relative path
            content: Optional leading bytes of the file for shebang sniffing

        Returns:
            Language name, or None when the file is unsupported
        """
        suffix = PurePosixPath(file_path).suffix.lower()
        lang = self.language_map.get(suffix)
        if lang is None and not suffix and content:
            lang = self._sniff(content)
        if lang not in self.supported_languages:
            return None
        return lang

    def _sniff(self, content: bytes) -> Optional[str]:
        """Detect language from a shebang line."""
        if not content.startswith(b'#!'):
            return None
        first_line = content.split(b'\n', 1)[0].decode('utf-8', errors='ignore')
        for fragment, lang in self.shebang_map.items():
            if fragment in first_line:
                return lang
        return None
