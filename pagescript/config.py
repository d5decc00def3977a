"""Central configuration for pagescript.

Reads configuration from environment variables, with .env file support.

Environment variables:
- PAGESCRIPT_HTML_PARSER: BeautifulSoup parser for page HTML (default: html.parser)
- PAGESCRIPT_FETCH_TIMEOUT: HTTP timeout in seconds for the default fetch (default: 30)
- PAGESCRIPT_USER_AGENT: User-Agent header sent by the default fetch
- PAGESCRIPT_PROXY: Proxy URL for the default fetch (optional)
- PAGESCRIPT_EXTRA_MODULES: Comma separated stdlib modules scripts may import (optional)
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from the working directory if it exists
_env_path = Path.cwd() / ".env"
try:
    if _env_path.is_file():
        load_dotenv(_env_path)
except (PermissionError, OSError):
    pass  # .env not accessible, rely on environment variables

DEFAULT_USER_AGENT = "pagescript/0.1 (+https://pypi.org/project/pagescript/)"

# Standard library modules scripts may always import
SAFE_MODULES = frozenset({
    "base64", "collections", "copy", "datetime", "decimal", "fractions",
    "functools", "hashlib", "html", "itertools", "json", "math", "random", "re",
    "statistics", "textwrap", "time", "unicodedata", "urllib.parse",
})

# Configuration values
HTML_PARSER = os.environ.get("PAGESCRIPT_HTML_PARSER", "html.parser")
FETCH_TIMEOUT = float(os.environ.get("PAGESCRIPT_FETCH_TIMEOUT", "30"))
USER_AGENT = os.environ.get("PAGESCRIPT_USER_AGENT", DEFAULT_USER_AGENT)
PROXY: str | None = os.environ.get("PAGESCRIPT_PROXY") or None
EXTRA_MODULES = frozenset(
    m.strip() for m in os.environ.get("PAGESCRIPT_EXTRA_MODULES", "").split(",") if m.strip()
)


def get_html_parser() -> str:
    """Get the BeautifulSoup parser name used for page HTML."""
    return HTML_PARSER


def get_fetch_timeout() -> float:
    """Get the default HTTP timeout in seconds."""
    return FETCH_TIMEOUT


def get_user_agent() -> str:
    """Get the User-Agent header sent by the default fetch."""
    return USER_AGENT


def get_proxy() -> str | None:
    """Get the configured proxy URL, if any."""
    return PROXY


def get_allowed_modules() -> frozenset[str]:
    """Get every standard library module a script may import.

    Returns:
        frozenset[str]: The built-in safe set plus PAGESCRIPT_EXTRA_MODULES
    """
    return SAFE_MODULES | EXTRA_MODULES
