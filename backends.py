import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import requests

from auth import CredentialManager, TokenClient
from errors import InvalidPathError, LocalBackendError, WebdavError
from paths import PathResolver
from uploader import Uploader, new_session

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Destination that accepts a seekable byte stream at a relative path."""

    @abstractmethod
    def upload(self, source, size, path):
        raise NotImplementedError


class SessionPool:
    """One requests.Session per thread, all of them closed together."""

    def __init__(self, factory=new_session):
        self._factory = factory
        self._tls = threading.local()
        self._lock = threading.Lock()
        self._sessions = []

    def __call__(self):
        s = getattr(self._tls, "session", None)
        if s is None:
            s = self._tls.session = self._factory()
            with self._lock:
                self._sessions.append(s)
        return s

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def close(self):
        with self._lock:
            sessions, self._sessions = self._sessions, []
            self._tls = threading.local()
        for s in sessions:
            s.close()


class OnedriveBackend(Backend):
    """OneDrive destination.

    Owns a ``CredentialManager`` whose refresher thread runs from
    construction until ``close()``, and the HTTP sessions its uploads
    opened on any thread, which ``close()`` closes as well.
    """

    def __init__(self, config, credential_manager, session_factory=None):
        self.config = config
        self.credential_manager = credential_manager
        self.sessions = SessionPool(session_factory or new_session)
        self.resolver = PathResolver(config, credential_manager, self.sessions)
        self.uploader = Uploader(config, credential_manager, self.resolver, self.sessions)
        self.credential_manager.start()

    @classmethod
    def _manager_options(cls, config):
        return {
            "poll_interval": config.refresh_interval,
            "refresh_margin": config.refresh_margin,
        }

    @classmethod
    def with_refresh_token(cls, config, refresh_token, token_client=None):
        token_client = token_client or TokenClient(config)
        manager = CredentialManager.from_refresh_token(
            token_client, refresh_token, **cls._manager_options(config)
        )
        return cls(config, manager)

    @classmethod
    def with_authorization_code(cls, config, token_client=None):
        token_client = token_client or TokenClient(config)
        manager = CredentialManager.from_authorization_code(
            token_client, config.redirect_uri, **cls._manager_options(config)
        )
        return cls(config, manager)

    @property
    def refresh_token(self):
        return self.credential_manager.credentials.refresh_token

    def upload(self, source, size, path, progress_fn=None):
        logger.debug("Uploading file to onedrive: %s", path)
        self.uploader.upload(source, size, path, progress_fn=progress_fn)

    def close(self):
        self.credential_manager.close()
        self.sessions.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class LocalBackend(Backend):
    """Copies uploads below a local folder, replacing existing files."""

    def __init__(self, folder):
        self.folder = Path(folder)

    def upload(self, source, size, path):
        logger.debug("Uploading file to local: %s", path)
        if Path(path).is_absolute():
            raise InvalidPathError(path)
        target = self.folder / path

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalBackendError(f"Failed to create directory {target.parent}: {e}", e) from e

        try:
            if target.exists():
                os.remove(target)
            with open(target, "wb") as f:
                shutil.copyfileobj(source, f)
        except OSError as e:
            raise LocalBackendError(f"Failed to copy data to {target}: {e}", e) from e


class WebdavBackend(Backend):
    """Plain WebDAV destination: delete whatever is there, then PUT."""

    def __init__(self, url, auth=None, session=None, timeout=(10, 120)):
        self.url = url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = auth
        self.timeout = timeout
        try:
            resp = self.session.request("PROPFIND", self.url + "/", headers={"Depth": "0"},
                                        timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise WebdavError(f"Failed to list files: {e}", e) from e

    def _url(self, path):
        return f"{self.url}/{str(path).replace(os.sep, '/').lstrip('/')}"

    def upload(self, source, size, path):
        url = self._url(path)
        try:
            self.session.delete(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug("Ignoring failed delete of %s: %s", url, e)

        headers = {"Content-Length": str(size)} if size is not None else {}
        try:
            resp = self.session.put(url, data=source, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise WebdavError(f"Failed to upload file: {e}", e) from e
