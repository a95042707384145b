# main.py
import argparse
import logging
import os
import sys

from backends import LocalBackend, OnedriveBackend, WebdavBackend
from config import CFG_PATH, load_config
from errors import UploadBackendError
from uploader import format_size

logger = logging.getLogger("drive_uploader")


def build_backend(args):
    if args.local:
        return LocalBackend(args.local)
    if args.webdav:
        auth = (args.user, args.password) if args.user else None
        return WebdavBackend(args.webdav, auth=auth)
    config, refresh_token = load_config(args.config)
    if refresh_token:
        return OnedriveBackend.with_refresh_token(config, refresh_token)
    return OnedriveBackend.with_authorization_code(config)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Upload a file to OneDrive, WebDAV or a local folder.")
    parser.add_argument("source", help="local file to upload")
    parser.add_argument("dest", help="destination path, relative to the backend root")
    parser.add_argument("--config", default=CFG_PATH, help="OneDrive JSON config")
    parser.add_argument("--local", metavar="DIR", help="copy into a local folder instead")
    parser.add_argument("--webdav", metavar="URL", help="upload to a WebDAV server instead")
    parser.add_argument("--user", help="WebDAV user")
    parser.add_argument("--password", help="WebDAV password")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    backend = None
    try:
        size = os.path.getsize(args.source)
        logger.info("Uploading %s (%s) to %s", args.source, format_size(size), args.dest)
        backend = build_backend(args)
        with open(args.source, "rb") as f:
            backend.upload(f, size, args.dest)
    except UploadBackendError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("%s", e)
        return 1
    finally:
        if isinstance(backend, OnedriveBackend):
            backend.close()
    logger.info("Upload finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
