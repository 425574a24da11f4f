from __future__ import annotations


class EpubShelfError(Exception):
    pass


class InvalidInput(EpubShelfError, ValueError):
    pass


class NotFound(EpubShelfError):
    pass


class BookNotFound(NotFound):
    pass


class EntryNotFound(NotFound):
    pass


class DecodeFailure(EpubShelfError):
    pass


class ArchiveUnreadable(DecodeFailure):
    pass


class StreamFailure(EpubShelfError):
    pass
