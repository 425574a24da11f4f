from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class MetaEntry:
    name: str
    content: str


@dataclass
class ManifestEntry:
    id: str
    href: str


@dataclass
class BookMetadata:
    base_url: str
    title: str = ""
    description: str = ""
    creator: str = ""
    cover_url: Optional[str] = None


@dataclass
class Chapter:
    base_url: str
    title: str
    url: str


@dataclass
class TableOfContents:
    chapters: list[Chapter] = field(default_factory=list)


def _drop_empty(data: dict) -> dict:
    return {key: value for key, value in data.items() if value not in {None, ""}}


def book_metadata_to_dict(meta: BookMetadata) -> dict:
    return _drop_empty(
        {
            "baseUrl": meta.base_url,
            "coverUrl": meta.cover_url,
            "name": meta.title,
            "intro": meta.description,
            "author": meta.creator,
        }
    )


def chapter_to_dict(chapter: Chapter) -> dict:
    data = _drop_empty({"baseUrl": chapter.base_url, "title": chapter.title})
    # The content object is always present, even when src was empty.
    data["content"] = _drop_empty({"url": chapter.url})
    return data


def toc_to_dict(toc: TableOfContents) -> dict:
    if not toc.chapters:
        return {}
    return {"chapters": [chapter_to_dict(chapter) for chapter in toc.chapters]}


def library_to_dict(books: list[BookMetadata]) -> dict:
    return {"list": [book_metadata_to_dict(book) for book in books]}
