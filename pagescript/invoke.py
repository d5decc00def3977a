"""Extraction invocation: the page argument, sub-scrapes and result encoding."""

import json
import logging
import threading
from typing import Any, Callable
from urllib.parse import urljoin, urlsplit

from .document import Document
from .errors import ExecutionError, PageError, SerializationError
from .types import ScrapeParams

logger = logging.getLogger(__name__)


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, Document):
        return {"WARNING": obj.WARNING}
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_structured(value: Any) -> Any:
    """Round-trip a script value through JSON so no live script objects escape.

    Raises:
        SerializationError: If the value has no JSON representation
    """
    if value is None:
        return None
    try:
        encoded = json.dumps(value, default=_encode_default, allow_nan=False)
    except (TypeError, ValueError, RecursionError) as e:
        raise SerializationError(f"result is not JSON serializable: {e}") from e
    return json.loads(encoded)


class Page:
    """The single argument handed to an extraction function.

    Attributes:
        url: Absolute URL of the page
        doc: Query document over the page HTML
        error: Why fetching or parsing failed, for pages passed to a
            ``scrape()`` callback; ``None`` otherwise
    """

    def __init__(self, params: ScrapeParams, doc: Document, error: str | None = None):
        self.url = params.url
        self.doc = doc
        self.error = error
        self._params = params

    @classmethod
    def from_params(cls, params: ScrapeParams) -> "Page":
        """Parse the page HTML and check its URL.

        Raises:
            PageError: If the HTML or the base URL cannot be used
        """
        try:
            urlsplit(params.url)
        except (TypeError, ValueError) as e:
            raise PageError(f"invalid page URL {params.url!r}: {e}") from e
        try:
            doc = Document.from_html(params.html)
        except Exception as e:
            raise PageError(f"parsing HTML of {params.url}: {e}") from e
        return cls(params, doc)

    def absolute_url(self, ref: str) -> str:
        """Resolve a reference against the page URL, or return it unchanged."""
        try:
            return urljoin(self.url, ref)
        except ValueError:
            return ref

    def scrape(self, url: str, callback: Callable[["Page"], Any]) -> Any:
        """Fetch another page now and hand it to ``callback``.

        Fetch and parse failures are not raised: the callback receives a page
        with ``error`` set and an empty document instead.
        """
        url = self.absolute_url(url)
        params = ScrapeParams(html="", url=url, fetch=self._params.fetch, follow=self._params.follow)
        try:
            body = params.fetch(url)
            if isinstance(body, bytes):
                body = body.decode("utf-8", errors="replace")
            page = Page.from_params(ScrapeParams(html=body, url=url, fetch=params.fetch, follow=params.follow))
        except Exception as e:
            logger.warning("Sub-scrape of %s failed: %s", url, e)
            page = Page(params, Document(), error=str(e))
        return callback(page)

    def follow(self, url: str) -> None:
        """Ask the crawler to visit ``url`` later."""
        if self._params.follow is not None:
            self._params.follow(self.absolute_url(url))

    def __repr__(self) -> str:
        return f"<Page url={self.url!r}>"


class Extractor:
    """Adapter around a script's default export.

    Calls are serialized by a lock owned by the sandbox instance: a script
    namespace is never entered by two invocations at once. Recursive
    ``scrape()`` calls run on the same stack and do not take the lock again.
    """

    def __init__(self, fn: Callable[[Page], Any]):
        self._fn = fn
        self._lock = threading.Lock()

    def __call__(self, params: ScrapeParams) -> Any:
        with self._lock:
            page = Page.from_params(params)
            try:
                result = self._fn(page)
            except (Exception, SystemExit) as e:
                logger.debug("Extraction of %s raised %r", params.url, e)
                raise ExecutionError(f"running extraction function: {e}") from e
            return to_structured(result)
