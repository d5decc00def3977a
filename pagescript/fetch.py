"""Default HTTP fetch used when the host does not bring its own."""

import httpx

from .config import get_fetch_timeout, get_proxy, get_user_agent
from .types import FetchFn


def _headers() -> dict:
    return {"User-Agent": get_user_agent(), "Accept": "text/html,application/xhtml+xml,*/*;q=0.8"}


def fetch(url: str, timeout: float | None = None, proxy: str | None = None) -> str:
    """Fetch a page and return its body as text.

    Raises:
        httpx.HTTPError: On transport errors and non-2xx responses
    """
    resp = httpx.get(
        url,
        headers=_headers(),
        timeout=timeout if timeout is not None else get_fetch_timeout(),
        follow_redirects=True,
        proxy=proxy or get_proxy(),
    )
    resp.raise_for_status()
    return resp.text


def make_fetch(client: httpx.Client) -> FetchFn:
    """Bind a fetch function to a client, for connection reuse or custom transports."""

    def _fetch(url: str) -> str:
        resp = client.get(url, headers=_headers(), follow_redirects=True)
        resp.raise_for_status()
        return resp.text

    return _fetch
