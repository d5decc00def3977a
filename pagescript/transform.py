"""Source transformer: bundle a script with its local modules and assets.

The entry script is parsed with ``ast``, every import is either left to the
runtime (the reserved ``pagescript`` namespace, host modules and the allowed
standard library) or resolved to a local ``.py`` file which is bundled in turn.
Files loaded with ``embed("data.json")`` are read and decoded here, so the
resulting :class:`~pagescript.types.Bundle` never touches the filesystem again.

Problems are collected across all files and raised together in a single
:class:`~pagescript.errors.CompileError`.
"""

import ast
import json
import logging
import posixpath
import re
import string
from pathlib import Path, PurePosixPath
from typing import Iterable, NamedTuple

from .config import get_allowed_modules
from .errors import CompileError
from .types import ENTRY_PATH, Bundle, Diagnostic

logger = logging.getLogger(__name__)

RESERVED_MODULE = "pagescript"
EMBED_FUNCTION = "embed"

# Asset loaders by file extension
LOADERS = {
    ".json": "json",
    ".txt": "text",
    ".html": "text",
    ".md": "text",
    ".csv": "text",
}

ALLOWED_NAMES = frozenset({"__name__", "__all__"})
ALLOWED_ATTRIBUTES = frozenset({"__init__", "__name__", "__doc__"})
ALLOWED_STRINGS = ALLOWED_NAMES | ALLOWED_ATTRIBUTES | {"__main__"}

# Frame, code and generator internals; a frame leads to its globals and builtins
INSPECT_ATTRIBUTES = frozenset({
    "ag_await", "ag_code", "ag_frame",
    "cr_await", "cr_code", "cr_frame", "cr_origin",
    "gi_code", "gi_frame", "gi_yieldfrom",
    "f_back", "f_builtins", "f_code", "f_globals", "f_locals", "f_trace",
    "tb_frame", "tb_next",
})

# str methods that look up attributes named inside the template
FORMAT_METHODS = frozenset({"format", "format_map"})

# Names of the guards the sandbox compiles into every module
GUARD_PREFIX = "__pagescript_"

_DUNDER_WORD = re.compile(r"(?<!\w)__\w+__(?!\w)")
_FIELD_ATTRIBUTE = re.compile(r"\.(\w+)")
_FORMATTER = string.Formatter()


class _ImportRef(NamedTuple):
    node: ast.stmt
    module: str
    level: int
    names: tuple[str, ...]


def asset_key(path: str) -> str:
    """Normalize an embed() path the same way at bundle and run time."""
    return posixpath.normpath(path.replace("\\", "/"))


def is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def is_restricted(name: str) -> bool:
    """Whether scripts may not read or write the attribute ``name``."""
    if name in ALLOWED_ATTRIBUTES:
        return False
    return name.startswith("_") or name in INSPECT_ATTRIBUTES


def format_fields_allowed(template: str) -> bool:
    """Whether no replacement field of a ``str.format()`` template reaches a restricted attribute."""
    try:
        fields = list(_FORMATTER.parse(template))
    except ValueError:
        # malformed, str.format() refuses it as well
        return True
    for _, field_name, spec, _ in fields:
        if field_name and any(is_restricted(attr) for attr in _FIELD_ATTRIBUTE.findall(field_name)):
            return False
        if spec and not format_fields_allowed(spec):
            return False
    return True


class _ScriptVisitor(ast.NodeVisitor):
    """Collect the imports, embedded assets and policy violations of one module."""

    def __init__(self, path: str):
        self.path = path
        self.imports: list[_ImportRef] = []
        self.assets: list[tuple[ast.Call, str]] = []
        self.diagnostics: list[Diagnostic] = []
        # names bound by import statements at module level
        self.imported: set[str] = set()
        self._embed_names: set[str] = set()
        self._host_names: set[str] = set()
        self._depth = 0

    def _error(self, node: ast.AST, text: str):
        self.diagnostics.append(_diagnostic(node, text, self.path))

    def _check_binding(self, node: ast.AST, name: str | None, dunder_ok: bool = False):
        if not name:
            return
        if name.startswith(GUARD_PREFIX) or (not dunder_ok and is_dunder(name) and name not in ALLOWED_NAMES):
            self._error(node, f"binding name {name!r} is not allowed")

    def _bind_import(self, node: ast.stmt, name: str):
        self._check_binding(node, name)
        if not self._depth:
            self.imported.add(name)

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            if alias.name == RESERVED_MODULE:
                self._host_names.add(alias.asname or alias.name)
            self._bind_import(node, alias.asname or alias.name.partition(".")[0])
            self.imports.append(_ImportRef(node, alias.name, 0, ()))
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        names = []
        for alias in node.names:
            if alias.name == "*":
                self._error(node, "wildcard imports are not supported")
                continue
            if node.module == RESERVED_MODULE and not node.level and alias.name == EMBED_FUNCTION:
                self._embed_names.add(alias.asname or alias.name)
            self._bind_import(node, alias.asname or alias.name)
            names.append(alias.name)
        self.imports.append(_ImportRef(node, node.module or "", node.level, tuple(names)))
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef):
        # methods keep their dunder names, the guard names stay reserved
        self._check_binding(node, node.name, dunder_ok=True)
        self._depth += 1
        self.generic_visit(node)
        self._depth -= 1

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda):
        self._depth += 1
        self.generic_visit(node)
        self._depth -= 1

    def visit_arg(self, node: ast.arg):
        self._check_binding(node, node.arg)
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        self._check_binding(node, node.name)
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global):
        for name in node.names:
            self._check_binding(node, name)

    visit_Nonlocal = visit_Global

    def visit_MatchAs(self, node):
        self._check_binding(node, node.name)
        self.generic_visit(node)

    visit_MatchStar = visit_MatchAs

    def visit_MatchMapping(self, node):
        self._check_binding(node, node.rest)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute):
        if is_restricted(node.attr):
            self._error(node, f"access to attribute {node.attr!r} is not allowed")
        elif (
            node.attr in FORMAT_METHODS
            and isinstance(node.value, ast.Constant)
            and isinstance(node.value.value, str)
            and not format_fields_allowed(node.value.value)
        ):
            self._error(node.value, "format fields may not access restricted attributes")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name):
        if is_dunder(node.id) and node.id not in ALLOWED_NAMES:
            self._error(node, f"use of name {node.id!r} is not allowed")

    def visit_Constant(self, node: ast.Constant):
        if not isinstance(node.value, str):
            return
        for word in _DUNDER_WORD.findall(node.value):
            if word not in ALLOWED_STRINGS:
                self._error(node, f"string literal names restricted attribute {word!r}")
                return

    def visit_Call(self, node: ast.Call):
        if self._is_embed(node.func):
            arg = node.args[0] if len(node.args) == 1 and not node.keywords else None
            if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
                self.assets.append((node, arg.value))
            else:
                self._error(node, f"{EMBED_FUNCTION}() takes a single string literal path")
        self.generic_visit(node)

    def _is_embed(self, func: ast.expr) -> bool:
        if isinstance(func, ast.Name):
            return func.id in self._embed_names
        return (
            isinstance(func, ast.Attribute)
            and func.attr == EMBED_FUNCTION
            and isinstance(func.value, ast.Name)
            and func.value.id in self._host_names
        )


def _diagnostic(node: ast.AST, text: str, path: str) -> Diagnostic:
    return Diagnostic(
        line=getattr(node, "lineno", 0) or 0,
        column=getattr(node, "col_offset", 0) or 0,
        text=text,
        path=path,
    )


def _syntax_diagnostic(exc: Exception, path: str) -> Diagnostic:
    line = getattr(exc, "lineno", None) or 0
    offset = getattr(exc, "offset", None) or 1
    text = getattr(exc, "msg", None) or str(exc)
    return Diagnostic(line=max(line, 0), column=max(offset - 1, 0), text=text, path=path)


class _Bundler:
    """Walks the import graph starting at the entry script."""

    def __init__(self, root: Path, external: frozenset[str], stdlib: frozenset[str]):
        self.root = root
        self.external = external
        self.stdlib = stdlib
        self.modules: dict[str, str] = {}
        self.paths: dict[str, str] = {}
        self.packages: set[str] = set()
        self.assets: dict = {}
        self.used_external: set[str] = set()
        self.diagnostics: list[Diagnostic] = []
        self._queue: list[tuple[str, Path, bool]] = []
        self._seen: set[str] = set()
        self._order: dict[str, int] = {}

    def run(self, source: str) -> Bundle:
        entry = self._visit(source, ENTRY_PATH, package="")
        while self._queue:
            name, file, is_package = self._queue.pop(0)
            self._load_module(name, file, is_package)

        if self.diagnostics:
            self.diagnostics.sort(key=lambda d: (self._order.get(d.path, len(self._order)), d.line, d.column))
            raise CompileError(self.diagnostics)

        logger.debug("Bundled %d local modules and %d assets", len(self.modules), len(self.assets))
        return Bundle(
            source=source,
            modules=dict(self.modules),
            packages=frozenset(self.packages),
            paths=dict(self.paths),
            assets=dict(self.assets),
            external=frozenset(self.used_external),
            imported=frozenset(entry.imported),
        )

    def _visit(self, source: str, path: str, package: str) -> "_ScriptVisitor | None":
        self._order.setdefault(path, len(self._order))
        try:
            tree = ast.parse(source, filename=path)
        except (SyntaxError, ValueError) as exc:
            self.diagnostics.append(_syntax_diagnostic(exc, path))
            return None

        visitor = _ScriptVisitor(path)
        visitor.visit(tree)
        self.diagnostics.extend(visitor.diagnostics)

        for ref in visitor.imports:
            self._resolve(ref, package, path)
        for node, rel in visitor.assets:
            self._load_asset(node, rel, path)
        return visitor

    def _load_module(self, name: str, file: Path, is_package: bool):
        path = self._display(file)
        self.paths[name] = path
        if is_package:
            self.packages.add(name)
        try:
            source = file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self._order.setdefault(path, len(self._order))
            self.diagnostics.append(Diagnostic(text=f"could not read module: {exc}", path=path))
            return
        self.modules[name] = source
        package = name if is_package else name.rpartition(".")[0]
        self._visit(source, path, package)

    def _resolve(self, ref: _ImportRef, package: str, path: str):
        if ref.level:
            parts = package.split(".") if package else []
            if ref.level - 1 > len(parts):
                self.diagnostics.append(
                    _diagnostic(ref.node, "attempted relative import beyond the script directory", path)
                )
                return
            base = parts[:len(parts) - (ref.level - 1)]
            target = ".".join(base + ([ref.module] if ref.module else []))
            self._require(ref, target, path)
            return

        if self._is_external(ref.module):
            self.used_external.add(ref.module)
            return
        self._require(ref, ref.module, path)

    def _is_external(self, name: str) -> bool:
        if name == RESERVED_MODULE or name.startswith(RESERVED_MODULE + "."):
            return True
        return name in self.external or name in self.stdlib

    def _require(self, ref: _ImportRef, target: str, path: str):
        if target:
            if not self._require_module(target):
                self.diagnostics.append(_diagnostic(ref.node, f"could not resolve module {target!r}", path))
                return

        for name in ref.names:
            sub = f"{target}.{name}" if target else name
            found = self._locate(sub)
            if found is not None:
                self._enqueue(sub, *found)
            elif not target:
                self.diagnostics.append(_diagnostic(ref.node, f"could not resolve module {name!r}", path))

    def _require_module(self, target: str) -> bool:
        found = self._locate(target)
        if found is None:
            return False

        # import a.b needs a as well; directories without __init__.py become empty packages
        parts = target.split(".")
        for i in range(1, len(parts)):
            parent = ".".join(parts[:i])
            parent_found = self._locate(parent)
            if parent_found is not None:
                self._enqueue(parent, *parent_found)
            elif parent not in self._seen:
                self._seen.add(parent)
                self.modules[parent] = ""
                self.packages.add(parent)
                self.paths[parent] = self._display(self.root.joinpath(*parent.split(".")))
        self._enqueue(target, *found)
        return True

    def _locate(self, dotted: str) -> tuple[Path, bool] | None:
        base = self.root.joinpath(*dotted.split("."))
        init = base / "__init__.py"
        if init.is_file():
            return init, True
        module = base.parent / (base.name + ".py")
        if module.is_file():
            return module, False
        return None

    def _enqueue(self, name: str, file: Path, is_package: bool):
        if name in self._seen:
            return
        self._seen.add(name)
        self._queue.append((name, file, is_package))

    def _load_asset(self, node: ast.Call, rel: str, path: str):
        suffix = PurePosixPath(rel).suffix.lower()
        loader = LOADERS.get(suffix)
        if loader is None:
            self.diagnostics.append(_diagnostic(node, f"no loader is configured for {rel!r}", path))
            return

        key = asset_key(rel)
        if key in self.assets:
            return
        try:
            text = (self.root / key).read_text(encoding="utf-8")
        except FileNotFoundError:
            self.diagnostics.append(_diagnostic(node, f"could not resolve asset {rel!r}", path))
            return
        except (OSError, UnicodeDecodeError) as exc:
            self.diagnostics.append(_diagnostic(node, f"could not read asset {rel!r}: {exc}", path))
            return

        if loader == "json":
            try:
                self.assets[key] = json.loads(text)
            except json.JSONDecodeError as exc:
                self._order.setdefault(key, len(self._order))
                self.diagnostics.append(Diagnostic(line=exc.lineno, column=exc.colno - 1, text=exc.msg, path=key))
            return
        self.assets[key] = text

    def _display(self, file: Path) -> str:
        try:
            return file.relative_to(self.root).as_posix()
        except ValueError:
            return file.as_posix()


def transform(source: str, resolve_dir: str | Path = ".", external: Iterable[str] = ()) -> Bundle:
    """
    Bundle a script into a self-contained unit.

    Args:
        source: Entry script source
        resolve_dir: Directory local modules and embedded assets are resolved against
        external: Extra module names the runtime provides (the Imports Table keys)

    Returns:
        The bundle, ready for :func:`pagescript.sandbox.instantiate`

    Raises:
        CompileError: With one diagnostic per problem, across all bundled files
    """
    bundler = _Bundler(Path(resolve_dir), frozenset(external), get_allowed_modules())
    return bundler.run(source)
