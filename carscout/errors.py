"""Exception taxonomy for the extraction engine."""

from typing import Optional


class CarscoutError(Exception):
    """Base class for engine errors."""


class TransientNavigationError(CarscoutError):
    """Navigation or search bootstrap failed; the run is retried via the unadvanced cursor."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}")


class EmptyPageAnomaly(CarscoutError):
    """Listing page rendered no candidate links, even after a re-render."""

    def __init__(self, page_number: int, url: Optional[str] = None):
        self.page_number = page_number
        self.url = url
        super().__init__(f"No detail links found on page {page_number}")


class ItemLevelFailure(CarscoutError):
    """Processing a single detail page failed."""

    def __init__(self, url: str, cause: BaseException):
        self.url = url
        self.cause = cause
        super().__init__(f"Error processing {url}: {cause}")


class PersistenceFailure(CarscoutError):
    """Appending a record to the output dataset failed."""


class ForwardingFailure(CarscoutError):
    """Downstream sink rejected or could not receive a record."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Forward to {url} failed: {reason}")


class RunLockedError(CarscoutError):
    """Another run currently holds the run lock."""

    def __init__(self, holder_run_id: Optional[str] = None):
        self.holder_run_id = holder_run_id
        super().__init__(
            f"Run lock held by {holder_run_id[:16]}..." if holder_run_id else "Run lock held"
        )
