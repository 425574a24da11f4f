from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from .env import read_env, read_env_int
from .web import create_app

DEFAULT_ADDR = "0.0.0.0:10005"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

logger = logging.getLogger("epubshelf")


def parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = (addr or "").rpartition(":")
    if not sep or not port.isdigit():
        raise argparse.ArgumentTypeError(f"address must look like HOST:PORT, got {addr!r}")
    return host.strip("[]") or "0.0.0.0", int(port)


def _env_log_level() -> str:
    level = (read_env("EPUBSHELF_LOG_LEVEL", "INFO") or "INFO").strip().upper()
    return level if level in LOG_LEVELS else "INFO"


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve a directory of EPUB files over HTTP.")
    parser.add_argument(
        "--addr",
        type=parse_addr,
        default=read_env("EPUBSHELF_ADDR", DEFAULT_ADDR) or DEFAULT_ADDR,
        help=f"listen address (default {DEFAULT_ADDR})",
    )
    parser.add_argument(
        "--dir",
        dest="library",
        default=read_env("EPUBSHELF_LIBRARY_DIR", "./"),
        help="directory holding the .epub files (default ./)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=read_env_int("EPUBSHELF_SCAN_WORKERS", 1, minimum=1),
        help="threads used to read books while listing the library",
    )
    parser.add_argument(
        "--log-level",
        default=_env_log_level(),
        choices=LOG_LEVELS,
        type=str.upper,
    )
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    library = Path(args.library)
    if not library.is_dir():
        print(f"Library directory not found: {library}", file=sys.stderr)
        return 1

    host, port = args.addr
    app = create_app(library, workers=args.workers)
    logger.info("listening on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())
    return 0


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))
