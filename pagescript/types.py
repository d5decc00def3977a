"""Type definitions shared by the transformer, sandbox and invocation layers."""

from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel

# Type aliases
FetchFn = Callable[[str], "str | bytes"]
FollowFn = Callable[[str], None]
Imports = dict[str, dict[str, Any]]

ENTRY_PATH = "<stdin>"


class Diagnostic(BaseModel):
    """A compile problem at a source position."""
    line: int = 0    # 1-based
    column: int = 0  # 0-based
    text: str
    path: str = ENTRY_PATH

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column}: {self.text}"


@dataclass(frozen=True)
class Bundle:
    """A fully resolved script, ready for evaluation.

    ``modules`` maps dotted module names to the source of every local module
    the entry imports (directly or not), ``assets`` maps the relative path of
    every embedded file to its loaded value, ``external`` lists the module
    names the runtime has to provide and ``imported`` holds the names the
    entry binds with module-level import statements.
    """
    source: str
    modules: dict[str, str] = field(default_factory=dict)
    packages: frozenset[str] = frozenset()
    paths: dict[str, str] = field(default_factory=dict)
    assets: dict[str, Any] = field(default_factory=dict)
    external: frozenset[str] = frozenset()
    imported: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ScrapeParams:
    """Everything one extraction call needs. Built fresh for every call."""
    html: str
    url: str
    fetch: FetchFn
    follow: FollowFn | None = None
