"""Core compile entry point: transform, then instantiate."""

from pathlib import Path

from .sandbox import Exports, instantiate
from .transform import transform
from .types import Imports


def compile(source: str, imports: Imports | None = None, resolve_dir: str | Path = ".") -> Exports:
    """
    Compile a script into its exports.

    The two phases stay separate: a script that transforms cleanly but exports
    nothing yields empty exports rather than an error, so a half-written script
    still compiles while it is being edited.

    Args:
        source: Script source
        imports: Host modules made available to the script
        resolve_dir: Directory local modules and embedded files are resolved against

    Raises:
        CompileError: If the source cannot be bundled
        InstantiationError: If evaluating the bundle fails
    """
    imports = imports or {}
    bundle = transform(source, resolve_dir=resolve_dir, external=imports.keys())
    return instantiate(bundle, imports)
