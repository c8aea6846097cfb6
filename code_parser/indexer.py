"""
Repository indexing: crawls a repository and runs classification, parsing
and symbol extraction for every file, in parallel and in isolation.
"""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from tqdm import tqdm

from .classifier import FileClassifier
from .extractors import SymbolExtractor
from .models import FileSymbols, ParseStatus, SourceFile
from .parser import FileParseError, ParserDispatcher
from .repository import AccessDenied, NotFound, RepositorySource

logger = logging.getLogger(__name__)

SNIFF_BYTES = 256


@dataclass(frozen=True)
class FileOutcome:
    """Result-or-error of processing one file."""
    source_file: SourceFile
    symbols: Optional[FileSymbols] = None


@dataclass(frozen=True)
class RepositoryIndex:
    """All per-file outcomes of one crawl, in path order."""
    files: Tuple[SourceFile, ...]
    symbols: Tuple[FileSymbols, ...]

    def count(self, status: Optional[ParseStatus]) -> int:
        return sum(1 for f in self.files if f.supported and f.status == status)

    @property
    def unsupported_count(self) -> int:
        return sum(1 for f in self.files if not f.supported)


class RepositoryIndexer:
    """Builds the per-file symbol batches for a repository."""

    def __init__(self, source: RepositorySource, classifier: FileClassifier,
                 dispatcher: ParserDispatcher, extractor: SymbolExtractor,
                 file_concurrency: int, show_progress: bool = False):
        """
        Initialize repository indexer.

        Args:
            source: Repository access collaborator
            classifier: File classifier
            dispatcher: Parser dispatcher
            extractor: Symbol extractor
            file_concurrency: Maximum number of files processed at once per job
            show_progress: Show a tqdm progress bar while parsing
        """
        self.source = source
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.extractor = extractor
        self.file_concurrency = max(1, file_concurrency)
        self.show_progress = show_progress

    def index(self, repository: str, is_cancelled: Optional[Callable[[], bool]] = None,
              on_progress: Optional[Callable[[int, int], None]] = None) -> RepositoryIndex:
        """
        Index an entire repository.

        Args:
            repository: Repository reference understood by the source
            is_cancelled: Polled after each file; when it returns True, files not
                yet started are skipped
            on_progress: Called with (files_done, files_total)

        Returns:
            RepositoryIndex with one SourceFile per listed path

        Raises:
            RepositoryAccessError: listing the repository or reading a file was denied
        """
        paths = self.source.list_files(repository)
        logger.info("Indexing %d files from %s", len(paths), repository)

        outcomes: List[Optional[FileOutcome]] = [None] * len(paths)
        with ThreadPoolExecutor(max_workers=self.file_concurrency) as executor:
            futures = {executor.submit(self._process_file, repository, path): i
                       for i, path in enumerate(paths)}
            done = 0
            try:
                for future in tqdm(as_completed(futures), total=len(futures),
                                   desc="Parsing files", disable=not self.show_progress):
                    outcomes[futures[future]] = future.result()
                    done += 1
                    if on_progress:
                        on_progress(done, len(paths))
                    if is_cancelled is not None and is_cancelled():
                        logger.info("Cancellation observed while indexing %s", repository)
                        break
            finally:
                for future in futures:
                    future.cancel()

        finished = [o for o in outcomes if o is not None]
        return RepositoryIndex(
            files=tuple(o.source_file for o in finished),
            symbols=tuple(o.symbols for o in finished if o.symbols is not None),
        )

    def _process_file(self, repository: str, path: str) -> FileOutcome:
        """Classify, parse and extract one file. Only access denial escapes."""
        try:
            content = self.source.read_file(repository, path)
        except AccessDenied:
            raise
        except NotFound as e:
            error = FileParseError(path, 'read', str(e))
            logger.warning("Failed to read %s", error)
            return FileOutcome(self._unread(path, error))

        language = self.classifier.classify(path, content[:SNIFF_BYTES])
        if language is None:
            return FileOutcome(SourceFile(path=path, language=None, size=len(content),
                                          line_count=content.count(b'\n'),
                                          content_hash=hashlib.sha256(content).hexdigest()))

        source_file, tree = self.dispatcher.parse(path, content, language)
        if tree is None:
            return FileOutcome(source_file)

        try:
            symbols = self.extractor.extract(source_file, tree)
        except Exception as e:
            error = FileParseError(path, 'extract', f"{type(e).__name__}: {e}")
            logger.warning("Failed to extract symbols from %s", error)
            failed = SourceFile(path=source_file.path, language=source_file.language,
                                size=source_file.size, line_count=source_file.line_count,
                                content_hash=source_file.content_hash,
                                status=ParseStatus.FAILED, error=str(error))
            return FileOutcome(failed)
        return FileOutcome(source_file, symbols)

    def _unread(self, path: str, error: FileParseError) -> SourceFile:
        language = self.classifier.classify(path)
        return SourceFile(path=path, language=language, size=0, line_count=0, content_hash='',
                          status=ParseStatus.FAILED if language else None,
                          error=str(error))
