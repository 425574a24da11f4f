from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
from pathlib import Path
import posixpath
from typing import Optional

from .epub import STREAM_CHUNK_SIZE, ContentStream, open_container, open_content, read_book_metadata, read_table_of_contents
from .env import read_env, read_env_int
from .errors import BookNotFound, EpubShelfError, InvalidInput
from .models import BookMetadata, TableOfContents

EPUB_SUFFIX = ".epub"
DEFAULT_LIBRARY_DIR = "./"

logger = logging.getLogger(__name__)


def library_dir() -> Path:
    return Path(read_env("EPUBSHELF_LIBRARY_DIR", DEFAULT_LIBRARY_DIR) or DEFAULT_LIBRARY_DIR)


def scan_workers() -> int:
    return read_env_int("EPUBSHELF_SCAN_WORKERS", 1, minimum=1)


def normalize_identifier(identifier: str) -> str:
    raw = (identifier or "").replace("\\", "/").lstrip("/")
    if not raw:
        raise InvalidInput("book identifier is empty")
    if "\x00" in raw:
        raise InvalidInput("book identifier contains NUL")
    if not raw.endswith(EPUB_SUFFIX):
        raise InvalidInput(f"book identifier must end with {EPUB_SUFFIX}")
    return posixpath.normpath(raw)


def _is_inside(base: Path, candidate: Path) -> bool:
    return candidate == base or base in candidate.parents


def resolve_book_path(root: Path, identifier: str) -> Path:
    """Map an untrusted identifier to an existing .epub file under ``root``.

    Anything resolving outside ``root`` (``../``, absolute paths, symlinks
    pointing elsewhere) is reported as BookNotFound, never returned.
    """
    normalized = normalize_identifier(identifier)
    base = root.resolve()
    candidate = (base / normalized).resolve()
    if not _is_inside(base, candidate):
        raise BookNotFound(f"{identifier} is outside the library")
    if not candidate.is_file():
        raise BookNotFound(f"{identifier} not found")
    return candidate


def _library_candidates(root: Path, needle: str) -> list[Path]:
    base = root.resolve()
    if not base.is_dir():
        raise BookNotFound(f"library directory {root} does not exist")
    candidates: list[Path] = []
    for path in base.iterdir():
        if not path.name.endswith(EPUB_SUFFIX) or needle not in path.name:
            continue
        if not path.is_file() or not _is_inside(base, path.resolve()):
            continue
        candidates.append(path)
    # Directory enumeration order is platform dependent; list by file name.
    return sorted(candidates, key=lambda path: path.name)


def _scan_one(epub_file: Path) -> Optional[BookMetadata]:
    try:
        with open_container(epub_file) as container:
            return read_book_metadata(container, epub_file.name)
    except (EpubShelfError, OSError) as exc:
        logger.warning("skipping %s: %s", epub_file.name, exc)
        return None


def scan_library(root: Path, needle: str = "", workers: int = 1) -> list[BookMetadata]:
    candidates = _library_candidates(root, needle or "")
    if workers > 1 and len(candidates) > 1:
        with ThreadPoolExecutor(max_workers=min(workers, len(candidates))) as pool:
            results = list(pool.map(_scan_one, candidates))
    else:
        results = [_scan_one(path) for path in candidates]
    books = [book for book in results if book is not None]
    skipped = len(candidates) - len(books)
    if skipped:
        logger.info("library scan: %d book(s) listed, %d skipped", len(books), skipped)
    return books


def list_books(root: Path, needle: str = "", workers: int = 1) -> list[BookMetadata]:
    return scan_library(root, needle, workers=workers)


def get_book_info(root: Path, identifier: str) -> BookMetadata:
    epub_file = resolve_book_path(root, identifier)
    with open_container(epub_file) as container:
        return read_book_metadata(container, normalize_identifier(identifier))


def get_table_of_contents(root: Path, identifier: str, flatten: bool = False) -> TableOfContents:
    epub_file = resolve_book_path(root, identifier)
    with open_container(epub_file) as container:
        return read_table_of_contents(container, normalize_identifier(identifier), flatten=flatten)


def get_content(
    root: Path, identifier: str, resource_path: str, chunk_size: int = STREAM_CHUNK_SIZE
) -> ContentStream:
    epub_file = resolve_book_path(root, identifier)
    return open_content(epub_file, resource_path, chunk_size=chunk_size)
