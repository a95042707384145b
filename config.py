# config.py
import json
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from errors import ConfigError, InvalidPathError

# Resolve config.json both in dev and in PyInstaller bundles
if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
    BASE_DIR = Path(sys._MEIPASS)
else:
    BASE_DIR = Path(__file__).parent

CFG_PATH = str((BASE_DIR / "config.json").resolve())

DEFAULT_SCOPES = ["Files.ReadWrite.All"]
DEFAULT_REDIRECT_URI = "http://localhost:20080"


class ApiType(Enum):
    COMMON = "common"
    CONSUMERS = "consumers"
    ORGANIZATIONS = "organizations"
    CHINA = "china"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in ("chinaapi", "china_api"):
            key = "china"
        for member in cls:
            if member.value == key or member.name.lower() == key:
                return member
        raise ConfigError(f"Unknown api_type {value!r}")

    @property
    def login_host(self):
        if self is ApiType.CHINA:
            return "https://login.chinacloudapi.cn"
        return "https://login.microsoftonline.com"

    @property
    def authority(self):
        tenant = "common" if self is ApiType.CHINA else self.value
        return f"{self.login_host}/{tenant}"

    @property
    def auth_url(self):
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_url(self):
        return f"{self.authority}/oauth2/v2.0/token"

    @property
    def graph_url(self):
        if self is ApiType.CHINA:
            return "https://microsoftgraph.chinacloudapi.cn/v1.0"
        return "https://graph.microsoft.com/v1.0"


@dataclass(frozen=True)
class BackendConfig:
    """Immutable settings of one OneDrive backend.

    ``root_folder`` is the absolute drive folder every upload path is
    resolved beneath.
    """

    client_id: str
    client_secret: str
    api_type: ApiType = ApiType.COMMON
    root_folder: PurePosixPath = PurePosixPath("/")
    scopes: tuple = tuple(DEFAULT_SCOPES)
    redirect_uri: str = DEFAULT_REDIRECT_URI
    timeout: tuple = (10, 120)
    refresh_interval: float = 60.0
    refresh_margin: float = 120.0

    def __post_init__(self):
        root = PurePosixPath(self.root_folder)
        if not root.is_absolute():
            raise InvalidPathError(self.root_folder)
        object.__setattr__(self, "root_folder", root)
        object.__setattr__(self, "api_type", ApiType.parse(self.api_type))
        object.__setattr__(self, "scopes", tuple(self.scopes))
        object.__setattr__(self, "timeout", tuple(self.timeout))


_REQUIRED_KEYS = ("client_id", "client_secret")


def load_config(path=CFG_PATH):
    """Read a JSON config file.

    Returns ``(BackendConfig, refresh_token)``; ``refresh_token`` is None when
    the file holds none and an interactive login is needed.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Missing config file at {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")

    missing = [k for k in _REQUIRED_KEYS if not cfg.get(k)]
    if missing:
        raise ConfigError(f"Missing config keys: {', '.join(missing)}")

    config = BackendConfig(
        client_id=cfg["client_id"],
        client_secret=cfg["client_secret"],
        api_type=ApiType.parse(cfg.get("api_type", "common")),
        root_folder=cfg.get("root_folder", "/"),
        scopes=cfg.get("scopes", DEFAULT_SCOPES),
        redirect_uri=cfg.get("redirect_uri", DEFAULT_REDIRECT_URI),
    )
    return config, cfg.get("refresh_token")
