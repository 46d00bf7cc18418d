"""Exception taxonomy for the ingestion pipeline.

Only configuration problems abort an invocation. Everything else is raised
at the point of failure and caught at the item or source boundary by the
pipeline stages, which record it as an ``ItemError``.
"""


class EverybotError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(EverybotError):
    """Missing endpoint/credential or unsupported source key. Aborts the run."""


class FetchError(EverybotError):
    """Base class for HTTP retrieval failures."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class TransientNetworkError(FetchError):
    """Timeout or connection failure that outlived the retry budget."""


class BlockedError(FetchError):
    """The portal answered 403 or kept answering 429."""

    def __init__(self, status: int, url: str | None = None):
        super().__init__(f"Blocked by remote host (HTTP {status})", url)
        self.status = status


class HttpStatusError(FetchError):
    """A definitive non-success status for a caller that needs a 2xx body."""

    def __init__(self, status: int, url: str | None = None):
        super().__init__(f"HTTP {status}", url)
        self.status = status


class ParseError(EverybotError):
    """A payload could not be interpreted at all."""
