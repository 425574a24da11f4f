from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import IO, Iterator, Optional
import zipfile
import zlib

from lxml import etree as LXML_ET

from .errors import ArchiveUnreadable, DecodeFailure, EntryNotFound, InvalidInput, StreamFailure
from .models import BookMetadata, Chapter, ManifestEntry, MetaEntry, TableOfContents

CONTENT_ROOT = "OEBPS"
OPF_ENTRY = f"{CONTENT_ROOT}/content.opf"
NCX_ENTRY = f"{CONTENT_ROOT}/toc.ncx"
STREAM_CHUNK_SIZE = 64 * 1024

logger = logging.getLogger(__name__)

# Errors zipfile/zlib raise while reading a member that exists but is damaged.
_MEMBER_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError, RuntimeError)

_MEDIA_TYPES = {
    ".xhtml": "application/xhtml+xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".ncx": "application/x-dtbncx+xml",
    ".opf": "application/oebps-package+xml",
    ".xml": "application/xml",
    ".js": "application/javascript",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".mp3": "audio/mpeg",
    ".mp4": "video/mp4",
}


class EpubContainer:
    """An opened EPUB archive.

    Use as a context manager; the underlying zip handle is closed on exit.
    """

    def __init__(self, path: Path, zf: zipfile.ZipFile) -> None:
        self.path = path
        self._zf = zf

    @property
    def name(self) -> str:
        return self.path.name

    def __enter__(self) -> "EpubContainer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    def _info(self, entry_name: str) -> zipfile.ZipInfo:
        try:
            return self._zf.getinfo(entry_name)
        except KeyError as exc:
            raise EntryNotFound(f"{self.name}: no entry {entry_name}") from exc

    def has_entry(self, entry_name: str) -> bool:
        try:
            self._info(entry_name)
        except EntryNotFound:
            return False
        return True

    def entry_size(self, entry_name: str) -> int:
        return self._info(entry_name).file_size

    def open_entry(self, entry_name: str) -> IO[bytes]:
        info = self._info(entry_name)
        try:
            return self._zf.open(info, "r")
        except _MEMBER_READ_ERRORS as exc:
            raise StreamFailure(f"{self.name}: cannot open {entry_name}: {exc}") from exc

    def read_entry(self, entry_name: str) -> bytes:
        with self.open_entry(entry_name) as stream:
            try:
                return stream.read()
            except _MEMBER_READ_ERRORS as exc:
                raise StreamFailure(f"{self.name}: cannot read {entry_name}: {exc}") from exc


def open_container(epub_file: Path) -> EpubContainer:
    try:
        zf = zipfile.ZipFile(epub_file, "r")
    except (zipfile.BadZipFile, EOFError, OSError, ValueError) as exc:
        raise ArchiveUnreadable(f"{epub_file.name}: {exc}") from exc
    return EpubContainer(epub_file, zf)


def _tag_local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _child_by_local_name(node: LXML_ET._Element, local_name: str) -> Optional[LXML_ET._Element]:
    for child in list(node):
        if _tag_local_name(child.tag) == local_name:
            return child
    return None


def _iter_children_by_local_name(node: LXML_ET._Element, local_name: str) -> list[LXML_ET._Element]:
    return [child for child in list(node) if _tag_local_name(child.tag) == local_name]


def _node_text(node: Optional[LXML_ET._Element]) -> str:
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def _attr(node: LXML_ET._Element, name: str) -> str:
    return str(node.attrib.get(name) or "").strip()


def _xml_root_from_bytes(raw: bytes, entry_name: str) -> LXML_ET._Element:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=False)
    try:
        root = LXML_ET.fromstring(raw, parser=parser)
    except (LXML_ET.XMLSyntaxError, ValueError) as exc:
        raise DecodeFailure(f"{entry_name}: malformed XML: {exc}") from exc
    if root is None:
        raise DecodeFailure(f"{entry_name}: empty document")
    return root


def _expect_root(root: LXML_ET._Element, entry_name: str, local_name: str) -> None:
    actual = _tag_local_name(root.tag)
    if actual != local_name:
        raise DecodeFailure(f"{entry_name}: root element is <{actual}>, expected <{local_name}>")


def resolve_cover_url(metas: list[MetaEntry], manifest: list[ManifestEntry]) -> Optional[str]:
    """Join <meta name="cover" content="ID"/> to the manifest item with that id.

    Returns the item's href, or None when either lookup misses.
    """
    cover_meta = next((meta for meta in metas if meta.name == "cover"), None)
    if cover_meta is None or not cover_meta.content:
        return None
    item = next((entry for entry in manifest if entry.id == cover_meta.content), None)
    if item is None or not item.href:
        return None
    return item.href


def decode_opf(raw: bytes, base_url: str) -> BookMetadata:
    root = _xml_root_from_bytes(raw, OPF_ENTRY)
    _expect_root(root, OPF_ENTRY, "package")
    metadata = _child_by_local_name(root, "metadata")
    if metadata is None:
        raise DecodeFailure(f"{OPF_ENTRY}: missing <metadata>")

    metas = [
        MetaEntry(name=_attr(node, "name"), content=_attr(node, "content"))
        for node in _iter_children_by_local_name(metadata, "meta")
    ]
    manifest: list[ManifestEntry] = []
    manifest_node = _child_by_local_name(root, "manifest")
    if manifest_node is not None:
        manifest = [
            ManifestEntry(id=_attr(node, "id"), href=_attr(node, "href"))
            for node in _iter_children_by_local_name(manifest_node, "item")
        ]

    return BookMetadata(
        base_url=base_url,
        title=_node_text(_child_by_local_name(metadata, "title")),
        description=_node_text(_child_by_local_name(metadata, "description")),
        creator=_node_text(_child_by_local_name(metadata, "creator")),
        cover_url=resolve_cover_url(metas, manifest),
    )


def _iter_nav_points(parent: LXML_ET._Element, flatten: bool) -> Iterator[LXML_ET._Element]:
    for point in _iter_children_by_local_name(parent, "navPoint"):
        yield point
        if flatten:
            yield from _iter_nav_points(point, flatten)


def _chapter_from_nav_point(point: LXML_ET._Element, base_url: str) -> Chapter:
    label = _child_by_local_name(point, "navLabel")
    text = _child_by_local_name(label, "text") if label is not None else None
    content = _child_by_local_name(point, "content")
    return Chapter(
        base_url=base_url,
        title=_node_text(text),
        url=_attr(content, "src") if content is not None else "",
    )


def decode_ncx(raw: bytes, base_url: str, flatten: bool = False) -> TableOfContents:
    """Decode toc.ncx into chapters, in document order.

    By default only the top-level navMap/navPoint entries are returned. With
    ``flatten`` nested navPoints follow their parent depth-first.
    """
    root = _xml_root_from_bytes(raw, NCX_ENTRY)
    _expect_root(root, NCX_ENTRY, "ncx")
    nav_map = _child_by_local_name(root, "navMap")
    if nav_map is None:
        raise DecodeFailure(f"{NCX_ENTRY}: missing <navMap>")
    return TableOfContents(
        chapters=[_chapter_from_nav_point(point, base_url) for point in _iter_nav_points(nav_map, flatten)]
    )


def read_book_metadata(container: EpubContainer, base_url: str) -> BookMetadata:
    try:
        raw = container.read_entry(OPF_ENTRY)
    except EntryNotFound as exc:
        raise DecodeFailure(f"{container.name}: missing {OPF_ENTRY}") from exc
    return decode_opf(raw, base_url)


def read_table_of_contents(container: EpubContainer, base_url: str, flatten: bool = False) -> TableOfContents:
    try:
        raw = container.read_entry(NCX_ENTRY)
    except EntryNotFound as exc:
        raise DecodeFailure(f"{container.name}: missing {NCX_ENTRY}") from exc
    return decode_ncx(raw, base_url, flatten=flatten)


def guess_media_type(entry_name: str) -> str:
    return _MEDIA_TYPES.get(PurePosixPath(entry_name).suffix.lower(), "application/octet-stream")


def content_entry_name(resource_path: str) -> str:
    raw = (resource_path or "").lstrip("/")
    if not raw:
        raise InvalidInput("resource path is empty")
    return f"{CONTENT_ROOT}/{raw}"


class ContentStream:
    """Raw bytes of one archive entry, yielded in chunks.

    Owns the archive handle: it is closed when iteration finishes, fails, or
    the consumer closes the stream early.
    """

    def __init__(
        self,
        container: EpubContainer,
        stream: IO[bytes],
        entry_name: str,
        size: int,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self._container = container
        self._stream = stream
        self.entry_name = entry_name
        self.size = size
        self.media_type = guess_media_type(entry_name)
        self.chunk_size = chunk_size
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        try:
            while True:
                try:
                    chunk = self._stream.read(self.chunk_size)
                except _MEMBER_READ_ERRORS as exc:
                    logger.error("%s: reading %s failed mid-stream: %s", self._container.name, self.entry_name, exc)
                    raise StreamFailure(f"{self._container.name}: reading {self.entry_name} failed: {exc}") from exc
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._stream.close()
        finally:
            self._container.close()


def open_content(epub_file: Path, resource_path: str, chunk_size: int = STREAM_CHUNK_SIZE) -> ContentStream:
    entry_name = content_entry_name(resource_path)
    container = open_container(epub_file)
    try:
        size = container.entry_size(entry_name)
        stream = container.open_entry(entry_name)
    except Exception:
        container.close()
        raise
    return ContentStream(container, stream, entry_name, size, chunk_size=chunk_size)
