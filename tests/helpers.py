from __future__ import annotations

from pathlib import Path
from typing import Optional
import zipfile

CONTAINER_XML = (
    "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
    "<container version=\"1.0\" xmlns=\"urn:oasis:names:tc:opendocument:xmlns:container\">"
    "<rootfiles><rootfile full-path=\"OEBPS/content.opf\" media-type=\"application/oebps-package+xml\"/>"
    "</rootfiles></container>"
)

COVER_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\x00\x01\x02"
CHAPTER_ONE = (
    "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
    "<html xmlns=\"http://www.w3.org/1999/xhtml\"><head><title>Down the Rabbit-Hole</title></head>"
    "<body><h1>Down the Rabbit-Hole</h1><p>Alice was beginning to get very tired.</p></body></html>"
).encode("utf-8")


def opf_xml(
    title: str = "Alice",
    creator: Optional[str] = "Lewis Carroll",
    description: Optional[str] = "A girl falls down a rabbit hole.",
    cover_meta: Optional[str] = "cover-image",
    manifest: Optional[list[tuple[str, str]]] = None,
) -> str:
    if manifest is None:
        manifest = [
            ("cover-image", "images/cover.jpg"),
            ("ncx", "toc.ncx"),
            ("ch1", "text/ch1.xhtml"),
            ("ch2", "text/ch2.xhtml"),
        ]
    meta_parts = [f"<dc:title>{title}</dc:title>", "<dc:language>en</dc:language>"]
    if creator is not None:
        meta_parts.append(f"<dc:creator opf:role=\"aut\">{creator}</dc:creator>")
    if description is not None:
        meta_parts.append(f"<dc:description>{description}</dc:description>")
    meta_parts.append("<meta name=\"generator\" content=\"tests\"/>")
    if cover_meta is not None:
        meta_parts.append(f"<meta name=\"cover\" content=\"{cover_meta}\"/>")
    items = "".join(
        f"<item id=\"{item_id}\" href=\"{href}\" media-type=\"application/octet-stream\"/>"
        for item_id, href in manifest
    )
    return (
        "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
        "<package xmlns=\"http://www.idpf.org/2007/opf\" unique-identifier=\"BookId\" version=\"2.0\">"
        "<metadata xmlns:dc=\"http://purl.org/dc/elements/1.1/\" xmlns:opf=\"http://www.idpf.org/2007/opf\">"
        f"{''.join(meta_parts)}"
        "</metadata>"
        f"<manifest>{items}</manifest>"
        "<spine toc=\"ncx\"><itemref idref=\"ch1\"/><itemref idref=\"ch2\"/></spine>"
        "</package>"
    )


def ncx_xml(points: list[tuple[str, str]]) -> str:
    nav_points = "".join(
        f"<navPoint id=\"np{idx}\" playOrder=\"{idx}\">"
        f"<navLabel><text>{title}</text></navLabel>"
        f"<content src=\"{src}\"/>"
        "</navPoint>"
        for idx, (title, src) in enumerate(points, start=1)
    )
    return (
        "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
        "<ncx xmlns=\"http://www.daisy.org/z3986/2005/ncx/\" version=\"2005-1\">"
        "<head><meta name=\"dtb:uid\" content=\"urn:uuid:1234\"/></head>"
        "<docTitle><text>Alice</text></docTitle>"
        f"<navMap>{nav_points}</navMap>"
        "</ncx>"
    )


DEFAULT_POINTS = [
    ("Down the Rabbit-Hole", "text/ch1.xhtml"),
    ("The Pool of Tears", "text/ch2.xhtml"),
]


def write_epub(
    path: Path,
    opf: Optional[str] = None,
    ncx: Optional[str] = None,
    extra: Optional[dict[str, bytes]] = None,
    include_opf: bool = True,
    include_ncx: bool = True,
    extra_compression: int = zipfile.ZIP_DEFLATED,
) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", b"application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        if include_opf:
            zf.writestr("OEBPS/content.opf", opf if opf is not None else opf_xml())
        if include_ncx:
            zf.writestr("OEBPS/toc.ncx", ncx if ncx is not None else ncx_xml(DEFAULT_POINTS))
        zf.writestr("OEBPS/images/cover.jpg", COVER_BYTES, compress_type=zipfile.ZIP_STORED)
        zf.writestr("OEBPS/text/ch1.xhtml", CHAPTER_ONE, compress_type=zipfile.ZIP_DEFLATED)
        for name, data in (extra or {}).items():
            zf.writestr(name, data, compress_type=extra_compression)
    return path


def write_corrupt_epub(path: Path) -> Path:
    path.write_bytes(b"PK\x03\x04 this is not really a zip archive")
    return path


def damage_stored_member(path: Path, needle: bytes, offset: int = 0) -> Path:
    """Flip one byte inside a ZIP_STORED member so its CRC check fails on read."""
    raw = bytearray(path.read_bytes())
    start = raw.find(needle)
    if start < 0:
        raise ValueError(f"{needle!r} not found in {path}")
    raw[start + offset] ^= 0xFF
    path.write_bytes(bytes(raw))
    return path
