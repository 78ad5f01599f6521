#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Directory Mirroring - listing, server, transports and sync orchestration
=========================================================================

Builds on the delta engine in delta_mirror.py to keep a local directory in
step with a remote one:

    server:  build_listing() -> MirrorService -> MirrorServer (HTTP)
    client:  HttpTransport -> SyncOrchestrator -> apply_patch -> atomic write

Quick Start:
-----------
    $ delta-mirror serve ./public --bind 127.0.0.1:8080
    $ delta-mirror sync http://127.0.0.1:8080 ./mirror -v

    >>> from mirror_sync import HttpTransport, SyncOrchestrator
    >>> report = SyncOrchestrator(HttpTransport("http://127.0.0.1:8080"), "./mirror").run()
    >>> report.print_summary()

HTTP Binding:
------------
    GET  /            health text
    GET  /list        {"algorithm": "sha256", "files": [{"path": ..., "hash": ...}]}
    POST /patch       {"file": "a/b.txt", "sig": "<base64 signature>"} -> patch bytes
    GET  /patch       same, with file/sig as query parameters
"""

from __future__ import annotations

__all__ = [
    # Listing
    'ListingEntry',
    'Listing',
    'PatternMatcher',
    'build_listing',

    # Server side
    'MirrorService',
    'MirrorRequestHandler',
    'MirrorServer',

    # Client side
    'MirrorTransport',
    'HttpTransport',
    'LocalTransport',
    'FileState',
    'FileSyncResult',
    'SyncReport',
    'SyncOptions',
    'ServeOptions',
    'SyncOrchestrator',

    # Filesystem helpers
    'validate_relative_path',
    'resolve_under_root',
    'persist_atomic',

    # CLI
    'Colors',
    'create_parser',
    'main',
]

import argparse
import base64
import binascii
import contextlib
import fnmatch
import json
import logging
import os
import stat
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import parse_qs, urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from delta_mirror import (
    ChecksumType,
    Config,
    DataIntegrityError,
    DecodeError,
    DeltaEngine,
    FilesystemError,
    MirrorError,
    PathTraversalError,
    TransportError,
    ValidationError,
    __version__,
    apply_patch,
    compute_delta,
    decode_patch,
    decode_signature,
    encode_patch,
    encode_signature,
    format_size,
    hash_bytes,
    hash_file,
)

logger = logging.getLogger('delta-mirror')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


# ============================================================================
# PATH SAFETY - wire paths are untrusted
# ============================================================================

def validate_relative_path(path: Any) -> str:
    """
    Normalize a wire path and make sure it stays inside whatever root it
    is later joined to.

    Rejected: empty paths, absolute or drive-qualified paths, NUL bytes and
    any ``..`` segment, with either separator. ``.`` and empty segments are
    dropped.

    Returns:
        The path with forward slashes only, e.g. ``"a/b.txt"``

    Raises:
        PathTraversalError: If the path could escape the root

    Example:
        >>> validate_relative_path("docs\\\\readme.md")
        'docs/readme.md'
    """
    if not isinstance(path, str) or not path:
        raise PathTraversalError(f"Invalid path {path!r}: must be a non-empty string")
    if '\x00' in path:
        raise PathTraversalError(f"Invalid path {path!r}: contains NUL byte")
    if path[0] in '/\\':
        raise PathTraversalError(f"Invalid path {path!r}: absolute paths are not allowed")
    # "c:", "c:/x" and "c:\\x"; on Windows also drive-relative "c:x"
    if (len(path) >= 2 and path[1] == ':' and path[0].isascii() and path[0].isalpha()
            and (os.name == 'nt' or path[2:3] in ('', '/', '\\'))):
        raise PathTraversalError(f"Invalid path {path!r}: drive-qualified paths are not allowed")

    parts = []
    for segment in path.replace('\\', '/').split('/'):
        if segment == '..':
            raise PathTraversalError(f"Invalid path {path!r}: '..' segments are not allowed")
        if segment in ('', '.'):
            continue
        parts.append(segment)

    if not parts:
        raise PathTraversalError(f"Invalid path {path!r}: no file name")
    return '/'.join(parts)


def resolve_under_root(root: str, path: str) -> str:
    """
    Join a validated relative path onto ``root``.

    Symlinks inside the tree are resolved as well, so a linked directory
    cannot redirect a read or write outside ``root``.

    Raises:
        PathTraversalError: If the path is unsafe or resolves outside root
    """
    rel = validate_relative_path(path)
    full = os.path.join(root, *rel.split('/'))

    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(os.path.dirname(full))
    try:
        inside = os.path.commonpath([real_root, real_parent]) == real_root
    except ValueError:
        inside = False
    if not inside:
        raise PathTraversalError(f"Invalid path {path!r}: resolves outside {root}")
    return full


def _ensure_parent_dir(path: str) -> None:
    """Create the parent directories of ``path``, retrying once on a race."""
    parent = os.path.dirname(path)
    if not parent:
        return
    for attempt in range(2):
        try:
            os.makedirs(parent, exist_ok=True)
            return
        except OSError as e:
            if attempt:
                raise FilesystemError(f"Cannot create directory {parent}: {e}", path=parent) from e
            logger.debug(f"Retrying creation of {parent} after: {e}")


def persist_atomic(path: str, data: bytes) -> None:
    """
    Write ``data`` to ``path`` so readers only ever see the old or the new
    contents: temp file in the same directory, fsync, then os.replace().

    The mode of an existing file is kept; new files get 0o644.

    Raises:
        FilesystemError: If any step fails (the temp file is removed)
    """
    _ensure_parent_dir(path)
    parent = os.path.dirname(path) or '.'

    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        mode = 0o644
    except OSError as e:
        raise FilesystemError(f"Cannot stat {path}: {e}", path=path) from e

    try:
        fd, tmp_path = tempfile.mkstemp(prefix='.', suffix='.dm-tmp', dir=parent)
    except OSError as e:
        raise FilesystemError(f"Cannot create temp file in {parent}: {e}", path=path) from e

    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise FilesystemError(f"Cannot write {path}: {e}", path=path) from e


# ============================================================================
# DIRECTORY LISTING - (relative path, content hash) per regular file
# ============================================================================

@dataclass(frozen=True)
class ListingEntry:
    """One regular file of the server tree."""
    path: str
    content_hash: bytes

    @property
    def hash_hex(self) -> str:
        return self.content_hash.hex()

    def __repr__(self) -> str:
        return f"ListingEntry({self.path!r}, {self.hash_hex[:16]}...)"


@dataclass(frozen=True)
class Listing:
    """
    Immutable snapshot of the server tree.

    Attributes:
        algorithm: Content hash used for every entry (client must match it)
        entries: Entries sorted by path, paths unique
    """
    algorithm: str
    entries: Tuple[ListingEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ListingEntry]:
        return iter(self.entries)

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]

    def get(self, path: str) -> Optional[ListingEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'algorithm': self.algorithm,
            'files': [{'path': e.path, 'hash': e.hash_hex} for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'Listing':
        """
        Rebuild a listing from its JSON form.

        Paths are not validated here; the orchestrator validates each one so
        a single bad path only fails that file.

        Raises:
            DecodeError: If the document is malformed or repeats a path
        """
        if not isinstance(data, dict) or not isinstance(data.get('files'), list):
            raise DecodeError("Listing must be an object with a 'files' array")

        algorithm = data.get('algorithm', Config.DEFAULT_CONTENT_HASH)
        if not isinstance(algorithm, str):
            raise DecodeError(f"Listing algorithm must be a string, got {algorithm!r}")

        entries = []
        seen = set()
        for item in data['files']:
            try:
                path = item['path']
                content_hash = bytes.fromhex(item['hash'])
            except (KeyError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed listing entry {item!r}: {e}") from None
            if not isinstance(path, str):
                raise DecodeError(f"Listing path must be a string, got {path!r}")
            if path in seen:
                raise DecodeError(f"Duplicate path in listing: {path}")
            seen.add(path)
            entries.append(ListingEntry(path, content_hash))

        return cls(algorithm=algorithm, entries=tuple(entries))


class PatternMatcher:
    """Pattern matching for --exclude, against the relative path and the file name."""

    def __init__(self, exclude_patterns: Optional[Sequence[str]] = None):
        self.exclude_patterns = list(exclude_patterns or [])

    def should_exclude(self, rel_path: str) -> bool:
        name = rel_path.rsplit('/', 1)[-1]
        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False


def build_listing(root: str, algorithm: Optional[str] = None,
                  exclude: Sequence[str] = ()) -> Listing:
    """
    Walk ``root`` and hash every regular file.

    Symlinks (to files or directories), devices, FIFOs and sockets are left
    out. A file that cannot be read is logged and skipped; the listing is
    still produced.

    Raises:
        FilesystemError: If ``root`` is not a directory
        ValidationError: If ``algorithm`` is unknown
    """
    if not os.path.isdir(root):
        raise FilesystemError(f"Root is not a directory: {root}", path=root, missing=True)

    checksum_type = ChecksumType.parse(algorithm or Config.DEFAULT_CONTENT_HASH)
    matcher = PatternMatcher(exclude)
    entries: List[ListingEntry] = []

    def _on_walk_error(error: OSError) -> None:
        logger.warning(f"Cannot read directory {error.filename}: {error.strerror}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error, followlinks=False):
        dirnames.sort()
        for name in dirnames:
            if os.path.islink(os.path.join(dirpath, name)):
                logger.debug(f"Skipping symlinked directory {os.path.join(dirpath, name)}")

        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root).replace(os.sep, '/')
            if matcher.should_exclude(rel):
                continue

            try:
                st = os.lstat(full)
            except OSError as e:
                logger.warning(f"Skipping {rel}: {e}")
                continue
            if not stat.S_ISREG(st.st_mode):
                logger.debug(f"Skipping non-regular file {rel}")
                continue

            try:
                digest = hash_file(full, checksum_type)
            except OSError as e:
                logger.warning(f"Skipping unreadable file {rel}: {e}")
                continue
            entries.append(ListingEntry(rel, digest))

    entries.sort(key=lambda entry: entry.path)
    logger.info(f"Listed {len(entries)} files under {root} ({checksum_type.value})")
    return Listing(algorithm=checksum_type.value, entries=tuple(entries))


# ============================================================================
# MIRROR SERVICE - the list / patch operations
# ============================================================================

class MirrorService:
    """
    Server side of the mirror: hands out the listing and computes patches.

    By default every list request walks the tree again, so changes made
    while the server runs reach the next sync. With
    ``rebuild_listing=False`` the startup listing is served until
    ``refresh_listing()`` builds a new snapshot and swaps the reference
    under a lock; concurrent requests always see one complete listing.

    Example:
        >>> service = MirrorService("./public")
        >>> patch_bytes = service.patch("a/b.txt", encode_signature(sig))
    """

    def __init__(self, root: str, algorithm: Optional[str] = None,
                 exclude: Sequence[str] = (), rebuild_listing: bool = True) -> None:
        self.root = os.path.abspath(root)
        self.algorithm = ChecksumType.parse(algorithm or Config.DEFAULT_CONTENT_HASH).value
        self.exclude = tuple(exclude)
        self.rebuild_listing = rebuild_listing
        self._matcher = PatternMatcher(self.exclude)
        self._lock = threading.Lock()
        self._listing = build_listing(self.root, self.algorithm, self.exclude)

    @property
    def listing(self) -> Listing:
        return self._listing

    def refresh_listing(self) -> Listing:
        listing = build_listing(self.root, self.algorithm, self.exclude)
        with self._lock:
            self._listing = listing
        return listing

    def list(self) -> Listing:
        if self.rebuild_listing:
            return self.refresh_listing()
        return self._listing

    def patch(self, file: str, signature_bytes: bytes) -> bytes:
        """
        Encoded patch turning the client's signed bytes into the current
        contents of ``file``. The file is read fresh for every request.

        Raises:
            PathTraversalError: If ``file`` is unsafe
            DecodeError: If the signature is corrupt
            FilesystemError: If the file is missing (``missing``) or unreadable
        """
        rel = validate_relative_path(file)
        signature = decode_signature(signature_bytes)

        full = resolve_under_root(self.root, rel)
        if self._matcher.should_exclude(rel):
            raise FilesystemError(f"Not found: {rel}", path=rel, missing=True)
        try:
            st = os.lstat(full)
        except FileNotFoundError:
            raise FilesystemError(f"Not found: {rel}", path=rel, missing=True) from None
        except OSError as e:
            raise FilesystemError(f"Cannot stat {rel}: {e}", path=rel) from e
        if not stat.S_ISREG(st.st_mode):
            raise FilesystemError(f"Not a regular file: {rel}", path=rel, missing=True)

        try:
            with open(full, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise FilesystemError(f"Cannot read {rel}: {e}", path=rel) from e

        patch = compute_delta(signature, data)
        payload = encode_patch(patch)
        logger.info(
            f"patch {rel}: {format_size(signature.file_size)} -> {format_size(len(data))}, "
            f"{patch.num_copies} copies, {format_size(patch.literal_bytes)} literal"
        )
        return payload


# ============================================================================
# HTTP SERVER - ThreadingHTTPServer binding of MirrorService
# ============================================================================

class MirrorRequestHandler(BaseHTTPRequestHandler):
    """Routes HTTP requests to the MirrorService attached to the server."""

    server_version = f"delta-mirror/{__version__}"

    @property
    def service(self) -> MirrorService:
        return self.server.service

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        args = parse_qs(url.query)

        handler = self.GET_ROUTES.get(url.path)
        if handler:
            self._dispatch(handler, self, args)
        else:
            self._send_text(HTTPStatus.NOT_FOUND, "Not found.")

    def do_POST(self) -> None:
        url = urlsplit(self.path)

        handler = self.POST_ROUTES.get(url.path)
        if not handler:
            self._send_text(HTTPStatus.NOT_FOUND, "Not found.")
            return

        try:
            length = int(self.headers.get('Content-Length') or 0)
        except ValueError:
            length = -1
        if length < 0:
            self._send_text(HTTPStatus.BAD_REQUEST, "Bad request: invalid Content-Length")
            self.close_connection = True
            return
        body = self.rfile.read(length) if length else b''
        try:
            data = json.loads(body) if body else {}
        except ValueError as e:
            self._send_text(HTTPStatus.BAD_REQUEST, f"Bad request: invalid JSON ({e})")
            return
        if not isinstance(data, dict):
            self._send_text(HTTPStatus.BAD_REQUEST, "Bad request: body must be a JSON object")
            return

        self._dispatch(handler, self, data)

    # GET handlers
    def _handle_health(self, args: Dict[str, List[str]]) -> None:
        self._send_text(HTTPStatus.OK, f"delta-mirror {__version__}: Hello there")

    def _handle_list(self, args: Dict[str, List[str]]) -> None:
        listing = self.service.list()
        self._send_bytes(
            HTTPStatus.OK,
            json.dumps(listing.to_dict()).encode(),
            'application/json; charset=utf-8',
        )

    def _handle_patch_query(self, args: Dict[str, List[str]]) -> None:
        self._serve_patch(args.get('file', [None])[0], args.get('sig', [None])[0])

    # POST handlers
    def _handle_patch_body(self, data: Dict[str, Any]) -> None:
        self._serve_patch(data.get('file'), data.get('sig'))

    def _serve_patch(self, file: Any, sig: Any) -> None:
        if not file or not sig or not isinstance(sig, str):
            self._send_text(HTTPStatus.BAD_REQUEST, "Bad request: 'file' and 'sig' are required")
            return
        try:
            signature_bytes = base64.b64decode(sig, validate=True)
        except (binascii.Error, ValueError) as e:
            self._send_text(HTTPStatus.BAD_REQUEST, f"Bad request: invalid base64 signature ({e})")
            return

        payload = self.service.patch(file, signature_bytes)
        self._send_bytes(HTTPStatus.OK, payload, 'application/octet-stream')

    GET_ROUTES: Dict[str, Callable[..., None]] = {
        '/': _handle_health,
        '/list': _handle_list,
        '/patch': _handle_patch_query,
    }
    POST_ROUTES: Dict[str, Callable[..., None]] = {
        '/patch': _handle_patch_body,
    }

    def _dispatch(self, handler: Callable[..., None], *args: Any) -> None:
        """Run a route handler and map failures onto status codes."""
        try:
            handler(*args)
        except FilesystemError as e:
            status = HTTPStatus.NOT_FOUND if e.missing else HTTPStatus.INTERNAL_SERVER_ERROR
            logger.warning(f"{self.command} {self.path}: {e}")
            self._send_text(status, f"Error: {e}")
        except (ValidationError, DecodeError) as e:
            logger.warning(f"{self.command} {self.path}: {e}")
            self._send_text(HTTPStatus.BAD_REQUEST, f"Bad request: {e}")
        except Exception as e:
            logger.exception(e)
            self._send_text(HTTPStatus.INTERNAL_SERVER_ERROR, f"Error: {e}")

    def _send_text(self, status: HTTPStatus, text: str) -> None:
        self._send_bytes(status, text.encode(), 'text/plain; charset=utf-8')

    def _send_bytes(self, status: HTTPStatus, payload: bytes, ctype: str) -> None:
        self.send_response(status)
        self.send_header('Content-Type', ctype)
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


class MirrorServer(ThreadingHTTPServer):
    """
    Threaded HTTP server exposing a MirrorService. Each request is handled
    on its own daemon thread.

    Example:
        >>> server = MirrorServer(("127.0.0.1", 0), MirrorService("./public"))
        >>> server.start()
        >>> print(server.url)
    """
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], service: MirrorService) -> None:
        self.service = service
        self._thread: Optional[threading.Thread] = None
        super().__init__(address, MirrorRequestHandler)

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"

    def start(self) -> threading.Thread:
        """Serve from a background thread (used by tests and embedding code)."""
        self._thread = threading.Thread(target=self.serve_forever, name='delta-mirror-server', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self.shutdown()
        self.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None


def parse_bind(value: str) -> Tuple[str, int]:
    """
    Parse ``HOST:PORT`` (or just ``PORT``).

    Raises:
        ValidationError: If the port is not a number in [0, 65535]
    """
    host, sep, port_text = value.rpartition(':')
    if not sep:
        host = '127.0.0.1'
    try:
        port = int(port_text)
    except ValueError:
        raise ValidationError(f"Invalid bind address {value!r}: expected HOST:PORT") from None
    if not 0 <= port <= 65535:
        raise ValidationError(f"Invalid port {port} in bind address {value!r}")
    return host or '127.0.0.1', port


# ============================================================================
# TRANSPORTS - client side of the wire contract
# ============================================================================

class MirrorTransport(Protocol):
    """What the orchestrator needs from a server connection."""
    def fetch_listing(self) -> Listing: ...
    def fetch_patch(self, path: str, signature_bytes: bytes) -> bytes: ...


class HttpTransport:
    """
    requests-based client for MirrorServer.

    With ``retries`` > 0, connection and read failures are retried by
    urllib3 with a short backoff; HTTP error statuses are not retried.

    Raises (from every call):
        TransportError: On connection failure, non-200 status or a
            malformed response
    """

    def __init__(self, base_url: str, timeout: float = 30.0, retries: int = 0,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

        if retries > 0:
            retry_config = Retry(
                total=retries,
                connect=retries,
                read=retries,
                status=0,  # status errors are reported, not retried
                backoff_factor=0.5,
                allowed_methods=frozenset({'GET', 'POST'}),
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_config)
            self.session.mount('http://', adapter)
            self.session.mount('https://', adapter)

    def _request(self, method: str, route: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{route}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if response.status_code != HTTPStatus.OK:
            detail = response.text[:200].strip()
            raise TransportError(
                f"{method} {url} returned {response.status_code}: {detail}",
                status=response.status_code,
            )
        return response

    def fetch_listing(self) -> Listing:
        response = self._request('GET', '/list')
        try:
            return Listing.from_dict(response.json())
        except ValueError as e:
            raise TransportError(f"Listing is not valid JSON: {e}") from e
        except DecodeError as e:
            raise TransportError(f"Malformed listing: {e}") from e

    def fetch_patch(self, path: str, signature_bytes: bytes) -> bytes:
        response = self._request('POST', '/patch', json={
            'file': path,
            'sig': base64.b64encode(signature_bytes).decode('ascii'),
        })
        return response.content

    def close(self) -> None:
        self.session.close()


class LocalTransport:
    """
    In-process transport that calls a MirrorService directly.

    Counts calls so tests can assert on network traffic.
    """

    def __init__(self, service: MirrorService) -> None:
        self.service = service
        self.list_calls = 0
        self.patch_calls = 0
        self.patched_paths: List[str] = []
        self._lock = threading.Lock()

    def fetch_listing(self) -> Listing:
        with self._lock:
            self.list_calls += 1
        return self.service.list()

    def fetch_patch(self, path: str, signature_bytes: bytes) -> bytes:
        with self._lock:
            self.patch_calls += 1
            self.patched_paths.append(path)
        return self.service.patch(path, signature_bytes)


# ============================================================================
# SYNC ORCHESTRATOR - per-file workflow on a bounded pool
# ============================================================================

class FileState(Enum):
    UNCHECKED = "unchecked"
    HASH_COMPARED = "hash-compared"
    UP_TO_DATE = "up-to-date"
    SIGNATURE_BUILT = "signature-built"
    PATCH_FETCHED = "patch-fetched"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class FileSyncResult:
    """Outcome of one file's sync."""
    path: str
    state: FileState = FileState.UNCHECKED
    original_size: int = 0
    patch_size: int = 0
    new_size: int = 0
    error: Optional[MirrorError] = None
    failed_at: Optional[FileState] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state in (FileState.UP_TO_DATE, FileState.APPLIED)


@dataclass
class SyncOptions:
    """
    Client-side knobs. ``None`` means "use the Config default".
    """
    block_size: Optional[int] = None
    strong_hash_size: Optional[int] = None
    strong_type: Optional[str] = None
    concurrency: int = 4
    skip_unchanged: bool = True
    verify: Optional[bool] = None
    timeout: float = 30.0
    retries: int = 0


@dataclass
class ServeOptions:
    root: str
    host: str = '127.0.0.1'
    port: int = 8080
    algorithm: Optional[str] = None
    exclude: List[str] = field(default_factory=list)
    rebuild_listing: bool = True


@dataclass
class SyncReport:
    """Results of one orchestrator run."""
    results: List[FileSyncResult] = field(default_factory=list)
    elapsed: float = 0.0

    def count(self, state: FileState) -> int:
        return sum(1 for r in self.results if r.state == state)

    @property
    def applied(self) -> int:
        return self.count(FileState.APPLIED)

    @property
    def up_to_date(self) -> int:
        return self.count(FileState.UP_TO_DATE)

    @property
    def failed(self) -> int:
        return self.count(FileState.FAILED)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def transferred_bytes(self) -> int:
        return sum(r.patch_size for r in self.results)

    @property
    def total_size(self) -> int:
        return sum(r.new_size for r in self.results if r.state == FileState.APPLIED)

    def result_for(self, path: str) -> Optional[FileSyncResult]:
        for result in self.results:
            if result.path == path:
                return result
        return None

    def print_summary(self, file: Any = None) -> None:
        """Print one line per file and the totals."""
        out = file or sys.stdout
        for r in self.results:
            if r.state == FileState.APPLIED:
                line = Colors.success(
                    f"{r.path}: {format_size(r.original_size)} -> {format_size(r.new_size)} "
                    f"(patch {format_size(r.patch_size)})"
                )
            elif r.state == FileState.UP_TO_DATE:
                line = Colors.info(f"{r.path}: up to date")
            else:
                line = Colors.error(f"{r.path}: {r.state.value}: {r.error}")
            print(line, file=out)

        print(f"\n{Colors.bold('Summary:')}", file=out)
        print(f"  Files:        {len(self.results):,}", file=out)
        print(f"  Updated:      {self.applied:,}", file=out)
        print(f"  Up to date:   {self.up_to_date:,}", file=out)
        print(f"  Failed:       {self.failed:,}", file=out)
        print(f"  Transferred:  {format_size(self.transferred_bytes)}", file=out)
        print(f"  Time:         {self.elapsed:.2f}s", file=out)


class SyncOrchestrator:
    """
    Brings ``directory`` in line with the server's listing.

    Every file runs through the same steps on a worker from a bounded
    pool: validate path, read local bytes (missing reads as empty), compare
    content hashes, build signature, fetch patch, apply, verify, persist
    atomically. A failing file is recorded as FAILED and never stops the
    others.

    Example:
        >>> orchestrator = SyncOrchestrator(transport, "./mirror", SyncOptions(concurrency=8))
        >>> report = orchestrator.run()
        >>> report.ok
        True
    """

    def __init__(self, transport: MirrorTransport, directory: str,
                 options: Optional[SyncOptions] = None) -> None:
        self.transport = transport
        self.directory = os.path.abspath(directory)
        self.options = options or SyncOptions()
        if self.options.concurrency < 1:
            raise ValidationError(f"concurrency must be at least 1, got {self.options.concurrency}")

        self.engine = DeltaEngine(
            block_size=self.options.block_size,
            strong_hash_size=self.options.strong_hash_size,
            strong_type=self.options.strong_type,
        )
        self.verify = Config.VERIFY_AFTER_PATCH if self.options.verify is None else self.options.verify
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Files that have not started yet will end up FAILED; running ones finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> SyncReport:
        """
        Raises:
            TransportError: If the listing cannot be fetched
            ValidationError: If the listing uses an unknown hash algorithm
        """
        start = time.time()
        listing = self.transport.fetch_listing()
        algorithm = ChecksumType.parse(listing.algorithm)
        logger.info(f"Syncing {len(listing)} files into {self.directory}")

        with ThreadPoolExecutor(max_workers=self.options.concurrency,
                                thread_name_prefix='delta-mirror') as pool:
            futures = [pool.submit(self.sync_file, entry, algorithm) for entry in listing]
            try:
                results = [future.result() for future in futures]
            except KeyboardInterrupt:
                self.cancel()
                raise

        report = SyncReport(results=results, elapsed=time.time() - start)
        logger.info(
            f"Sync done: {report.applied} updated, {report.up_to_date} up to date, "
            f"{report.failed} failed in {report.elapsed:.2f}s"
        )
        return report

    def sync_file(self, entry: ListingEntry, algorithm: ChecksumType) -> FileSyncResult:
        """Run the whole per-file workflow. Never raises for MirrorError/OSError."""
        result = FileSyncResult(path=entry.path)
        start = time.time()
        try:
            if self._cancel.is_set():
                raise MirrorError("Sync cancelled before this file started")

            rel = validate_relative_path(entry.path)
            target = resolve_under_root(self.directory, rel)
            local = self._read_local(target)
            original = local if local is not None else b''
            result.original_size = len(original)

            # A missing file is never up to date, even when the remote one is empty
            if (self.options.skip_unchanged and local is not None
                    and hash_bytes(original, algorithm) == entry.content_hash):
                result.state = FileState.UP_TO_DATE
                logger.debug(f"{rel}: up to date")
                return result
            result.state = FileState.HASH_COMPARED

            signature_bytes = encode_signature(self.engine.build_signature(original))
            result.state = FileState.SIGNATURE_BUILT

            patch_bytes = self.transport.fetch_patch(rel, signature_bytes)
            result.patch_size = len(patch_bytes)
            result.state = FileState.PATCH_FETCHED

            new_data = apply_patch(original, decode_patch(patch_bytes))
            if self.verify:
                digest = hash_bytes(new_data, algorithm)
                if digest != entry.content_hash:
                    raise DataIntegrityError(
                        f"{rel}: patched content does not match listing hash "
                        f"(listing {entry.hash_hex[:16]}..., got {digest.hex()[:16]}...)"
                    )

            persist_atomic(target, new_data)
            result.new_size = len(new_data)
            result.state = FileState.APPLIED
            logger.info(
                f"{rel}: {format_size(result.original_size)} -> {format_size(result.new_size)} "
                f"(patch {format_size(result.patch_size)})"
            )
        except MirrorError as e:
            self._fail(result, e)
        except OSError as e:
            self._fail(result, FilesystemError(f"{entry.path}: {e}", path=entry.path))
        finally:
            result.elapsed = time.time() - start
        return result

    @staticmethod
    def _fail(result: FileSyncResult, error: MirrorError) -> None:
        result.failed_at = result.state
        result.state = FileState.FAILED
        result.error = error
        logger.warning(f"{result.path}: failed after {result.failed_at.value}: {error}")

    @staticmethod
    def _read_local(path: str) -> Optional[bytes]:
        """Current local bytes, or None when the file does not exist yet."""
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Cannot read {path}: {e}", path=path) from e


# ============================================================================
# TERMINAL OUTPUT
# ============================================================================

class Colors:
    """
    ANSI colors for terminal summaries.

    Disabled on non-TTY output or when Config.USE_COLORS = False.

    Example:
        >>> print(Colors.success("Operation completed"))
        [OK] Operation completed
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def setup_logging(verbosity: int) -> None:
    """WARNING by default, INFO with -v, DEBUG with -vv."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger.setLevel(level)
    Config.VERBOSE_LOGGING = verbosity >= 2


def _read_file(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except FileNotFoundError:
        raise FilesystemError(f"Input file not found: {path}", path=path, missing=True) from None
    except OSError as e:
        raise FilesystemError(f"Cannot read {path}: {e}", path=path) from e


def _report_error(e: MirrorError) -> int:
    """Print a CLI error and map it onto an exit code."""
    if isinstance(e, ValidationError):
        print(Colors.error(f"Validation error: {e}"), file=sys.stderr)
        return 2
    print(Colors.error(f"{type(e).__name__}: {e}"), file=sys.stderr)
    return 1


def cli_serve(args: Any) -> int:
    """Serve a directory until interrupted."""
    try:
        host, port = parse_bind(args.bind)
        options = ServeOptions(
            root=args.root, host=host, port=port, algorithm=args.hash,
            exclude=args.exclude or [], rebuild_listing=args.rebuild_listing,
        )
        service = MirrorService(options.root, options.algorithm, options.exclude,
                                options.rebuild_listing)
        server = MirrorServer((options.host, options.port), service)
    except MirrorError as e:
        return _report_error(e)
    except OSError as e:
        print(Colors.error(f"Cannot bind {args.bind}: {e}"), file=sys.stderr)
        return 1

    if not args.quiet:
        print(Colors.info(
            f"Serving {Colors.bold(service.root)} ({len(service.listing)} files, "
            f"{service.algorithm}) on {server.url}"
        ))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print(Colors.warning("\nServer stopped by user"), file=sys.stderr)
        return 130
    finally:
        server.server_close()
    return 0


def cli_sync(args: Any) -> int:
    """Mirror a server's directory into a local one."""
    options = SyncOptions(
        block_size=args.block_size,
        strong_hash_size=args.strong_size,
        strong_type=args.strong_hash,
        concurrency=args.jobs,
        skip_unchanged=not args.no_skip,
        verify=False if args.no_verify else None,
        timeout=args.timeout,
        retries=args.retries,
    )
    transport = HttpTransport(args.server, timeout=options.timeout, retries=options.retries)
    orchestrator: Optional[SyncOrchestrator] = None
    try:
        orchestrator = SyncOrchestrator(transport, args.directory, options)
        report = orchestrator.run()
    except MirrorError as e:
        return _report_error(e)
    except KeyboardInterrupt:
        if orchestrator is not None:
            orchestrator.cancel()
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130
    finally:
        transport.close()

    if not args.quiet:
        report.print_summary()
    return 0 if report.ok else 1


def cli_signature(args: Any) -> int:
    """Write the signature of a local file."""
    try:
        data = _read_file(args.file)
        engine = DeltaEngine(args.block_size, args.strong_size, args.strong_hash)
        signature = engine.build_signature(data)
        persist_atomic(args.output, encode_signature(signature))
    except MirrorError as e:
        return _report_error(e)

    if not args.quiet:
        print(Colors.success(f"Signature saved to: {args.output}"))
        print(f"  File size:    {signature.file_size:,} bytes")
        print(f"  Blocks:       {signature.num_blocks:,}")
        print(f"  Block size:   {signature.block_size:,} bytes")
        print(f"  Strong hash:  {signature.strong_type.value} ({signature.strong_hash_size} bytes)")
    return 0


def cli_delta(args: Any) -> int:
    """Write the patch from a signature to a new file."""
    try:
        signature = decode_signature(_read_file(args.signature))
        patch = compute_delta(signature, _read_file(args.file))
        persist_atomic(args.output, encode_patch(patch))
    except MirrorError as e:
        return _report_error(e)

    if not args.quiet:
        print(Colors.success(f"Patch saved to: {args.output}"))
        print(f"  Original size:  {signature.file_size:,} bytes")
        print(f"  New size:       {patch.target_size:,} bytes")
        print(f"  Copied bytes:   {patch.copied_bytes:,}")
        print(f"  Literal bytes:  {patch.literal_bytes:,}")
        print(f"  Instructions:   {len(patch.instructions)}")
    return 0


def cli_patch(args: Any) -> int:
    """Apply a patch to a file."""
    try:
        patch = decode_patch(_read_file(args.patch))
        reconstructed = apply_patch(_read_file(args.original), patch)
        persist_atomic(args.output, reconstructed)
    except MirrorError as e:
        return _report_error(e)

    if not args.quiet:
        print(Colors.success(f"File reconstructed: {args.output}"))
        print(f"  Size: {len(reconstructed):,} bytes")
    return 0


def create_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-v', '--verbose', action='count', default=0,
                        help='More log output (-v info, -vv debug)')
    common.add_argument('-q', '--quiet', action='store_true', help='No summary output')

    engine_opts = argparse.ArgumentParser(add_help=False)
    engine_opts.add_argument('--block-size', type=int, default=None,
                             help=f'Signature block size (default {Config.DEFAULT_BLOCK_SIZE})')
    engine_opts.add_argument('--strong-size', type=int, default=None,
                             help=f'Strong checksum bytes per block (default {Config.DEFAULT_STRONG_HASH_SIZE})')
    engine_opts.add_argument('--strong-hash', choices=[t.value for t in ChecksumType], default=None,
                             help=f'Strong checksum algorithm (default {Config.DEFAULT_STRONG_TYPE})')

    parser = argparse.ArgumentParser(
        prog='delta-mirror',
        description='Mirror a remote directory by transferring only byte-level differences.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', parents=[common], help='Serve a directory')
    serve.add_argument('root', help='Directory to serve')
    serve.add_argument('--bind', default='127.0.0.1:8080', help='HOST:PORT to listen on')
    serve.add_argument('--hash', choices=[t.value for t in ChecksumType], default=None,
                       help=f'Content hash for the listing (default {Config.DEFAULT_CONTENT_HASH})')
    serve.add_argument('--exclude', action='append', metavar='PATTERN',
                       help='Leave out files matching PATTERN (repeatable)')
    serve.add_argument('--cache-listing', dest='rebuild_listing', action='store_false',
                       help='Serve the startup listing instead of rebuilding it per request')
    serve.set_defaults(func=cli_serve)

    sync = sub.add_parser('sync', parents=[common, engine_opts], help='Mirror a server into a directory')
    sync.add_argument('server', help='Server URL, e.g. http://127.0.0.1:8080')
    sync.add_argument('directory', help='Local directory to update')
    sync.add_argument('-j', '--jobs', type=int, default=4, help='Files synced in parallel')
    sync.add_argument('--timeout', type=float, default=30.0, help='Per-request timeout in seconds')
    sync.add_argument('--retries', type=int, default=0, help='Retries for connection/read failures')
    sync.add_argument('--no-verify', action='store_true', help='Skip the hash check after patching')
    sync.add_argument('--no-skip', action='store_true',
                      help='Exchange signatures even for files whose hash already matches')
    sync.set_defaults(func=cli_sync)

    signature = sub.add_parser('signature', parents=[common, engine_opts], help='Write a file signature')
    signature.add_argument('file')
    signature.add_argument('-o', '--output', required=True)
    signature.set_defaults(func=cli_signature)

    delta = sub.add_parser('delta', parents=[common], help='Write a patch from a signature')
    delta.add_argument('signature')
    delta.add_argument('file')
    delta.add_argument('-o', '--output', required=True)
    delta.set_defaults(func=cli_delta)

    patch = sub.add_parser('patch', parents=[common], help='Apply a patch')
    patch.add_argument('original')
    patch.add_argument('patch')
    patch.add_argument('-o', '--output', required=True)
    patch.set_defaults(func=cli_patch)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        0 on success, 1 if any file failed or on a generic error,
        2 on a validation error, 130 when interrupted
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
