from __future__ import annotations


class AshError(Exception):
    """Base class for errors the command line reports without a traceback."""


class ConfigError(AshError):
    pass


class DocumentParseError(AshError):
    def __init__(self, message: str, lineno: int | None = None) -> None:
        self.lineno = lineno
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)


class MalformedFieldError(DocumentParseError):
    def __init__(self, field: str, value: str, lineno: int | None = None) -> None:
        self.field = field
        self.value = value
        super().__init__(f"malformed {field}: {value!r}", lineno)


class StashApiError(AshError):
    """Error body returned by Stash for a rejected request."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(body)


class UnexpectedStatusError(AshError):
    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"unexpected status code from Stash: {status}")
