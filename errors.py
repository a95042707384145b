# errors.py
"""Exceptions raised by the upload backends.

Every failure surfaced to a caller of ``upload()`` is an ``UploadBackendError``.
When the failure comes from the transport, the ``requests`` exception is kept
on ``.source`` and chained as ``__cause__``.
"""


class UploadBackendError(Exception):
    def __init__(self, message, source=None):
        super().__init__(message)
        self.source = source


class ConfigError(UploadBackendError):
    pass


class RefreshTokenError(UploadBackendError):
    def __init__(self, message, source=None):
        super().__init__(f"Failed to refresh token: {message}", source)


class CsrfTokenError(UploadBackendError):
    def __init__(self):
        super().__init__("Failed to verify csrf token")


class FileTooLargeError(UploadBackendError):
    def __init__(self, file, size):
        super().__init__(
            f"The file {file} is too large {size}. The maximum file size is 250 GB"
        )
        self.file = file
        self.size = size


class InvalidPathError(UploadBackendError):
    def __init__(self, path):
        super().__init__(f"Invalid Path: {path}")
        self.path = str(path)


class GetParentIdError(UploadBackendError):
    def __init__(self, path, source):
        super().__init__(f"Failed to get parent id for path: {path}, error: {source}", source)
        self.path = str(path)


class CreateDirError(UploadBackendError):
    def __init__(self, path, source):
        super().__init__(f"Failed to create directory for path: {path}, error: {source}", source)
        self.path = str(path)


class ParseError(UploadBackendError):
    def __init__(self, context):
        super().__init__(f"Failed to parse response: {context}")
        self.context = context


class CreateUploadSessionError(UploadBackendError):
    def __init__(self, source):
        super().__init__(f"Failed to create upload session: {source}", source)


class UploadFileSessionError(UploadBackendError):
    def __init__(self, message):
        super().__init__(f"Failed to upload file with session: {message}")


class UploadFileSessionRequestError(UploadBackendError):
    def __init__(self, source):
        super().__init__(f"Failed to upload file with session: {source}", source)


class UploadFileError(UploadBackendError):
    def __init__(self, source):
        super().__init__(f"Failed to upload file: {source}", source)


class ReadFileError(UploadBackendError):
    def __init__(self, source):
        super().__init__(f"Failed to read file: {source}", source)


class LocalBackendError(UploadBackendError):
    pass


class WebdavError(UploadBackendError):
    pass
