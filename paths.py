import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import quote

import requests

from errors import CreateDirError, GetParentIdError, InvalidPathError, ParseError
from uploader import get_session, status_error

logger = logging.getLogger(__name__)

_ROOT = PurePosixPath("/")


@dataclass(frozen=True)
class ResolvedLocation:
    parent_id: str
    leaf_name: str

    @property
    def quoted_leaf(self):
        return quote(self.leaf_name, safe="")


def _item_id(resp, path, error_cls):
    try:
        data = resp.json()
    except ValueError as e:
        raise error_cls(path, e) from e
    item_id = data.get("id") if isinstance(data, dict) else None
    if not isinstance(item_id, str) or not item_id:
        raise ParseError(repr(data))
    return item_id


class PathResolver:
    """Turns a path below the configured root folder into a drive item id.

    Nothing is cached: each upload looks its folders up again, and folders
    that are missing are created on the way. Two uploads creating the same
    folder at once both succeed thanks to the "replace" conflict behavior.
    """

    def __init__(self, config, credentials, session_factory=get_session):
        self.config = config
        self.credentials = credentials
        self.session_factory = session_factory

    @property
    def graph_url(self):
        return self.config.api_type.graph_url

    def _headers(self):
        return {"Authorization": f"Bearer {self.credentials.current_access_token()}"}

    def calu_path(self, path):
        """Split ``root_folder / path`` into ``(parent folder, leaf name)``."""
        rel = PurePosixPath(str(path).replace("\\", "/"))
        if rel.is_absolute() or ".." in rel.parts:
            raise InvalidPathError(path)
        full = self.config.root_folder / rel
        if full == self.config.root_folder or not full.name:
            raise InvalidPathError(full)
        return full.parent, full.name

    def resolve(self, path):
        parent, leaf = self.calu_path(path)
        return ResolvedLocation(self.resolve_parent(parent), leaf)

    def resolve_parent(self, folder):
        folder = PurePosixPath(folder)
        if folder == _ROOT:
            url = f"{self.graph_url}/me/drive/root"
        else:
            url = f"{self.graph_url}/me/drive/root:/{quote(str(folder).lstrip('/'))}"

        try:
            resp = self.session_factory().get(url, headers=self._headers(),
                                              timeout=self.config.timeout)
        except requests.RequestException as e:
            raise GetParentIdError(folder, e) from e

        if resp.status_code == 200:
            return _item_id(resp, folder, GetParentIdError)
        if resp.status_code == 404 and folder != _ROOT:
            return self.create_folder(folder)
        raise GetParentIdError(folder, status_error(resp))

    def create_folder(self, folder, parent_id=None, retried=False):
        """Create ``folder`` under its parent, creating the parent first when missing.

        A 404 for the parent is retried once per level; a second one is an error.
        """
        folder = PurePosixPath(folder)
        if folder == _ROOT or not folder.name:
            raise InvalidPathError(folder)
        parent = folder.parent
        if parent_id is None:
            parent_id = self.resolve_parent(parent)

        body = {
            "name": folder.name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": "replace",
        }
        try:
            resp = self.session_factory().post(
                f"{self.graph_url}/me/drive/items/{parent_id}/children",
                headers=self._headers(), json=body, timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise CreateDirError(folder, e) from e

        if resp.status_code in (200, 201):
            logger.debug("Created folder %s", folder)
            return _item_id(resp, folder, CreateDirError)
        if resp.status_code == 404 and parent != _ROOT and not retried:
            # parent vanished between lookup and create
            logger.debug("Parent of %s not found, creating it", folder)
            return self.create_folder(folder, parent_id=self.create_folder(parent), retried=True)
        raise CreateDirError(folder, status_error(resp))
