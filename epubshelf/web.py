from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from fastapi.templating import Jinja2Templates
from starlette.background import BackgroundTask

from .errors import DecodeFailure, EpubShelfError, InvalidInput, NotFound, StreamFailure
from .models import book_metadata_to_dict, library_to_dict, toc_to_dict
from .storage import (
    EPUB_SUFFIX,
    get_book_info,
    get_content,
    get_table_of_contents,
    library_dir,
    list_books,
    scan_workers,
)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_ERROR_STATUS = (
    (InvalidInput, 400),
    (NotFound, 404),
    (DecodeFailure, 503),
    (StreamFailure, 503),
)

logger = logging.getLogger(__name__)


def _http_error(exc: EpubShelfError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def _no_cache_headers() -> dict[str, str]:
    return {
        "Cache-Control": "no-cache, must-revalidate",
        "Pragma": "no-cache",
    }


def split_identifier(target: str) -> tuple[str, str]:
    """Split ``<identifier>.epub<resource>`` right after the first ``.epub``."""
    index = (target or "").find(EPUB_SUFFIX)
    if index < 0:
        raise InvalidInput(f"expected a path containing {EPUB_SUFFIX}")
    cut = index + len(EPUB_SUFFIX)
    return target[:cut], target[cut:]


def _library_root(request: Request) -> Path:
    return request.app.state.library_root


def _json(payload: dict) -> JSONResponse:
    return JSONResponse(payload, headers=_no_cache_headers())


def index(request: Request, q: str = "") -> HTMLResponse:
    try:
        books = list_books(_library_root(request), q, workers=request.app.state.scan_workers)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return request.app.state.templates.TemplateResponse(
        request,
        "index.html",
        {"books": books, "q": q},
        headers=_no_cache_headers(),
    )


def book_page(request: Request, target: str) -> HTMLResponse:
    root = _library_root(request)
    try:
        identifier, _ = split_identifier(target)
        book = get_book_info(root, identifier)
        toc = get_table_of_contents(root, identifier, flatten=True)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return request.app.state.templates.TemplateResponse(
        request,
        "book.html",
        {"book": book, "chapters": toc.chapters},
        headers=_no_cache_headers(),
    )


def search(request: Request, needle: str = "") -> JSONResponse:
    try:
        books = list_books(_library_root(request), needle, workers=request.app.state.scan_workers)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return _json(library_to_dict(books))


def info(request: Request, target: str) -> JSONResponse:
    try:
        identifier, _ = split_identifier(target)
        book = get_book_info(_library_root(request), identifier)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return _json(book_metadata_to_dict(book))


def chapter(request: Request, target: str) -> JSONResponse:
    try:
        identifier, _ = split_identifier(target)
        toc = get_table_of_contents(_library_root(request), identifier)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return _json(toc_to_dict(toc))


def content(request: Request, target: str) -> StreamingResponse:
    try:
        identifier, resource_path = split_identifier(target)
        if not resource_path.strip("/"):
            raise InvalidInput("missing resource path")
        stream = get_content(_library_root(request), identifier, resource_path)
    except EpubShelfError as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(
        stream,
        media_type=stream.media_type,
        headers={"Content-Length": str(stream.size)},
        background=BackgroundTask(stream.close),
    )


def booksource(request: Request) -> Response:
    return request.app.state.templates.TemplateResponse(
        request,
        "booksource.json",
        {"base_url": str(request.base_url)},
        media_type="application/json",
    )


def create_app(library_root: Optional[Path] = None, workers: Optional[int] = None) -> FastAPI:
    root = Path(library_root) if library_root is not None else library_dir()

    app = FastAPI(title="epubshelf")
    app.state.library_root = root
    app.state.scan_workers = workers if workers and workers > 0 else scan_workers()
    app.state.templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_api_route("/", index, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/book/{target:path}", book_page, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/search/{needle:path}", search, methods=["GET"])
    app.add_api_route("/info/{target:path}", info, methods=["GET"])
    app.add_api_route("/chapter/{target:path}", chapter, methods=["GET"])
    app.add_api_route("/content/{target:path}", content, methods=["GET"])
    app.add_api_route("/booksource", booksource, methods=["GET"])

    logger.info("serving EPUB library %s", root.resolve())
    return app
