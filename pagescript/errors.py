"""Error types raised by the compile, instantiate and invoke phases."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .types import Diagnostic


class PagescriptError(Exception):
    """Base error for everything raised by pagescript."""


class CompileError(PagescriptError):
    """The script could not be transformed. Carries every diagnostic found."""

    def __init__(self, diagnostics: Sequence["Diagnostic"]) -> None:
        self.diagnostics = list(diagnostics)
        super().__init__("\n".join(str(d) for d in self.diagnostics))


class InstantiationError(PagescriptError):
    """Evaluating the bundled script failed or it exports no usable default."""


class InvocationError(PagescriptError):
    """An extraction call failed for one page. The sandbox stays usable."""


class PageError(InvocationError):
    """The page HTML or its base URL could not be turned into a call argument."""


class ExecutionError(InvocationError):
    """The extraction function raised."""


class SerializationError(InvocationError):
    """The extraction result is not representable as JSON data."""
