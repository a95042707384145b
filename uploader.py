import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import (
    CreateUploadSessionError,
    FileTooLargeError,
    ParseError,
    ReadFileError,
    UploadFileError,
    UploadFileSessionError,
    UploadFileSessionRequestError,
)

logger = logging.getLogger(__name__)

# --- Graph upload limits ---
MAX_FILE_LIMIT = 250 * 1024 * 1024 * 1024  # 250 GiB
CHUNK_SIZE = 10 * 1024 * 1024  # 10 MiB, a multiple of the 320 KiB Graph alignment

_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB"]

# Thread-local shared HTTP session for connection reuse
_tls = threading.local()


def new_session():
    """Build a requests.Session with connection pooling.

    Only connection failures of GET lookups are retried; a chunk or a direct
    upload that fails is reported to the caller as is.
    """
    s = requests.Session()
    retry = Retry(
        total=3,
        connect=3, read=0, status=0, other=0,
        backoff_factor=0.5,
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=16, pool_maxsize=16)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def get_session():
    """Return the current thread's shared session."""
    s = getattr(_tls, "session", None)
    if s is None:
        s = _tls.session = new_session()
    return s


def status_error(response):
    """Build the HTTPError describing an unexpected response status."""
    try:
        response.raise_for_status()
    except requests.HTTPError as e:
        return e
    return requests.HTTPError(
        f"Unexpected status {response.status_code} for url: {response.url}",
        response=response,
    )


def format_size(size):
    """Render a byte count with the largest unit keeping the value below 1024."""
    value = float(size)
    for i, unit in enumerate(_SIZE_UNITS):
        if value < 1024 ** (i + 1):
            return f"{value / 1024 ** i:.2f} {unit}"
    last = len(_SIZE_UNITS) - 1
    return f"{value / 1024 ** last:.2f} {_SIZE_UNITS[last]}"


_FRACTION = re.compile(r"\.(\d+)")


def parse_datetime(value):
    """Parse a Graph timestamp such as ``2024-05-01T10:00:00.1234567Z`` as aware UTC."""
    if not isinstance(value, str) or not value:
        raise ParseError(f"expirationDateTime={value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat handles at most microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ParseError(f"expirationDateTime={value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_range_start(rng):
    """Start offset of a nextExpectedRanges entry: ``"start-"`` or ``"start-end"``."""
    start = str(rng).split("-", 1)[0].strip()
    if not start.isdigit():
        raise ParseError(f"nextExpectedRanges entry {rng!r}")
    return int(start)


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass
class UploadSession:
    upload_url: str
    expiration: datetime
    next_expected_ranges: list = field(default_factory=list)

    @classmethod
    def from_json(cls, data, upload_url=None):
        if not isinstance(data, dict):
            raise ParseError(repr(data))
        url = upload_url or data.get("uploadUrl")
        if not url:
            raise ParseError(repr(data))
        ranges = data.get("nextExpectedRanges") or []
        if not isinstance(ranges, list):
            raise ParseError(f"nextExpectedRanges={ranges!r}")
        return cls(
            upload_url=url,
            expiration=parse_datetime(data.get("expirationDateTime")),
            next_expected_ranges=ranges,
        )

    def expired(self, now):
        return self.expiration < now

    def next_start(self):
        return parse_range_start(self.next_expected_ranges[0])


class SessionState(Enum):
    AWAITING_SESSION = "awaiting_session"
    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    EXPIRED = "expired"
    FAILED = "failed"


_TERMINAL = (SessionState.COMPLETE, SessionState.EXPIRED, SessionState.FAILED)


def _read_chunk(source, start, length):
    try:
        source.seek(start)
        buf = bytearray()
        while len(buf) < length:
            data = source.read(length - len(buf))
            if not data:
                break
            buf += data
    except (OSError, ValueError) as e:
        raise ReadFileError(e) from e
    return bytes(buf)


class ChunkedTransfer:
    """Drives one upload session from creation to a terminal state.

    The server decides where the next chunk starts through
    ``nextExpectedRanges``; the transfer has no chunk counter of its own.
    """

    def __init__(self, uploader, source, size, path, progress_fn=None):
        self.uploader = uploader
        self.source = source
        self.size = size
        self.path = path
        self.progress_fn = progress_fn
        self.state = SessionState.AWAITING_SESSION
        self.session = None
        self.start = 0
        self.chunks_sent = 0

    def run(self):
        try:
            self.session = self.uploader.create_session(self.path)
            self.state = SessionState.TRANSFERRING
            while self.state not in _TERMINAL:
                self.step()
        except UploadFileSessionError:
            self.state = SessionState.EXPIRED
            raise
        except Exception:
            self.state = SessionState.FAILED
            raise
        return self.state

    def step(self):
        if self.session.expired(self.uploader.clock()):
            raise UploadFileSessionError("Upload session expired")

        length = min(CHUNK_SIZE, self.size - self.start)
        chunk = _read_chunk(self.source, self.start, length)
        if not chunk:
            raise ReadFileError(f"source ended at offset {self.start} of {self.size}")

        resp = self.uploader.put_chunk(self.session.upload_url, chunk, self.start, self.size)
        self.chunks_sent += 1

        if resp.status_code in (200, 201):
            self.state = SessionState.COMPLETE
            self._report(self.size)
            return
        if resp.status_code != 202:
            raise UploadFileSessionRequestError(status_error(resp))

        try:
            body = resp.json()
        except ValueError as e:
            raise UploadFileSessionRequestError(e) from e
        self.session = UploadSession.from_json(body, upload_url=self.session.upload_url)
        if not self.session.next_expected_ranges:
            self.state = SessionState.COMPLETE
            self._report(self.size)
            return

        previous = self.start
        self.start = self.session.next_start()
        if self.start <= previous:
            logger.warning("Server requested range starting at %d again after chunk at %d",
                           self.start, previous)
        self._report(self.start)

    def _report(self, uploaded):
        if self.progress_fn:
            self.progress_fn(uploaded, self.size)


class Uploader:
    """Size policy plus direct and session uploads to one drive."""

    def __init__(self, config, credentials, resolver, session_factory=get_session, clock=_utcnow):
        self.config = config
        self.credentials = credentials
        self.resolver = resolver
        self.session_factory = session_factory
        self.clock = clock

    def _auth_headers(self):
        return {"Authorization": f"Bearer {self.credentials.current_access_token()}"}

    def _item_url(self, location, action):
        return (f"{self.config.api_type.graph_url}/me/drive/items/"
                f"{location.parent_id}:/{location.quoted_leaf}:/{action}")

    def upload(self, source, size, path, progress_fn=None):
        if size > MAX_FILE_LIMIT:
            raise FileTooLargeError(str(path), format_size(size))

        if size < CHUNK_SIZE:
            logger.debug("Uploading %s (%s) in a single request", path, format_size(size))
            self.upload_small(source, size, path, progress_fn)
        else:
            logger.debug("Uploading %s (%s) with an upload session", path, format_size(size))
            self.upload_large(source, size, path, progress_fn)

    def upload_small(self, source, size, path, progress_fn=None):
        location = self.resolver.resolve(path)
        try:
            source.seek(0)
            body = source.read()
        except (OSError, ValueError) as e:
            raise ReadFileError(e) from e

        headers = self._auth_headers()
        headers["Content-Type"] = "application/octet-stream"
        try:
            resp = self.session_factory().put(
                self._item_url(location, "content"), headers=headers, data=body,
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise UploadFileError(e) from e

        if resp.status_code not in (200, 201):
            raise UploadFileError(status_error(resp))
        if progress_fn:
            progress_fn(size, size)
        logger.debug("Uploaded %s (%d B)", path, size)

    def create_session(self, path):
        location = self.resolver.resolve(path)
        body = {
            "item": {"@microsoft.graph.conflictBehavior": "replace"},
            "deferCommit": False,
        }
        try:
            resp = self.session_factory().post(
                self._item_url(location, "createUploadSession"), headers=self._auth_headers(),
                json=body, timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise CreateUploadSessionError(e) from e

        if resp.status_code not in (200, 201):
            raise CreateUploadSessionError(status_error(resp))
        try:
            data = resp.json()
        except ValueError as e:
            raise CreateUploadSessionError(e) from e
        session = UploadSession.from_json(data)
        logger.debug("Upload session created for %s, expires %s", path, session.expiration)
        return session

    def put_chunk(self, upload_url, chunk, start, size):
        end = start + len(chunk) - 1
        headers = self._auth_headers()
        headers["Content-Length"] = str(len(chunk))
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        logger.debug("Sending bytes %d-%d/%d", start, end, size)
        try:
            return self.session_factory().put(
                upload_url, headers=headers, data=chunk, timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise UploadFileSessionRequestError(e) from e

    def upload_large(self, source, size, path, progress_fn=None):
        transfer = ChunkedTransfer(self, source, size, path, progress_fn)
        transfer.run()
        logger.debug("Uploaded %s (%d B) in %d chunks", path, size, transfer.chunks_sent)
        return transfer
