"""pagescript - compile extraction scripts and run them against fetched pages."""

from .types import Bundle, Diagnostic, FetchFn, FollowFn, Imports, ScrapeParams
from .errors import (
    CompileError,
    ExecutionError,
    InstantiationError,
    InvocationError,
    PageError,
    PagescriptError,
    SerializationError,
)
from .document import Document
from .transform import transform
from .invoke import Page, to_structured
from .sandbox import Exports, instantiate
from .core import compile
from .fetch import fetch, make_fetch
from .template import SCRIPT_TEMPLATE, write_template

__all__ = [
    # Types
    "Bundle",
    "Diagnostic",
    "FetchFn",
    "FollowFn",
    "Imports",
    "ScrapeParams",
    # Errors
    "PagescriptError",
    "CompileError",
    "InstantiationError",
    "InvocationError",
    "PageError",
    "ExecutionError",
    "SerializationError",
    # Documents
    "Document",
    "Page",
    "to_structured",
    # Phases
    "transform",
    "instantiate",
    "Exports",
    "compile",
    # Fetch
    "fetch",
    "make_fetch",
    # Template
    "SCRIPT_TEMPLATE",
    "write_template",
]
