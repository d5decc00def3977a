"""Sandbox runtime: evaluate a bundle in an isolated namespace.

Each call to :func:`instantiate` builds everything from scratch:

- a curated builtins table (no file, eval or introspection helpers)
- an importer that only knows the host modules, the bundled local modules
  and copies of the allowed standard library modules
- the ``pagescript`` host module, whose ``@default`` decorator records the
  extraction function and whose ``embed()`` returns bundled assets

Every module is compiled with its attribute writes and ``str.format()``
lookups routed through guards owned by the instance. A script may only
modify objects it created, and no lookup reaches private, frame or code
attributes.

Nothing is shared between two instances except the host values passed in the
Imports Table.
"""

import ast
import builtins
import copy
import importlib
import json
import logging
import types
import weakref
from typing import Any

from .config import get_allowed_modules
from .errors import InstantiationError
from .invoke import Extractor, to_structured
from .transform import FORMAT_METHODS, GUARD_PREFIX, RESERVED_MODULE, asset_key, format_fields_allowed, is_restricted
from .types import ENTRY_PATH, Bundle, Imports, ScrapeParams

logger = logging.getLogger(__name__)
script_logger = logging.getLogger("pagescript.script")

ENTRY_MODULE = "__script__"
DEFAULT_EXPORT = "default"
SCRAPE_EXPORT = "__scrape"

WRITE_GUARD = GUARD_PREFIX + "write__"
READ_GUARD = GUARD_PREFIX + "getattr__"

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "classmethod", "complex", "dict", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "hash", "hex", "id", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "object",
    "oct", "ord", "pow", "property", "range", "repr", "reversed", "round", "set",
    "slice", "sorted", "staticmethod", "str", "sum", "super", "tuple", "type", "zip",
    "NotImplemented", "Ellipsis",
)

# Stdlib members that bypass the attribute guards or change process-wide state
HIDDEN_MEMBERS = {
    "functools": frozenset({"singledispatch", "singledispatchmethod", "update_wrapper", "wraps"}),
    "decimal": frozenset({"setcontext"}),
    "time": frozenset({"tzset"}),
}


class Exports(dict):
    """Values exported by one script instance.

    Holds the script's public names, ``"default"`` when the script declared an
    extraction function, and the locked adapter under ``"__scrape"``.
    """

    def config(self) -> bytes:
        """JSON encoding of the ``config`` export, ``b""`` when there is none."""
        if "config" not in self:
            return b""
        return json.dumps(to_structured(self["config"])).encode()

    def invoke(self, params: ScrapeParams) -> Any:
        """Run the extraction function on one page.

        Raises:
            InstantiationError: If the script has no default export
            InvocationError: If the call fails for this page
        """
        extractor = self.get(SCRAPE_EXPORT)
        if extractor is None:
            raise InstantiationError("default export is not defined")
        return extractor(params)


def _check_attribute(name: Any):
    if isinstance(name, str) and is_restricted(name):
        raise AttributeError(f"access to attribute {name!r} is not allowed")


def _check_format(obj: Any, name: str):
    if isinstance(obj, type) and issubclass(obj, str):
        raise AttributeError(f"{name}() is only available on string instances")
    if isinstance(obj, str) and not format_fields_allowed(obj):
        raise ValueError("format fields may not access restricted attributes")


class _Guards:
    """Attribute guards of one sandbox instance.

    Writes are limited to what the script created: its modules, functions and
    classes, and instances of those classes. Host values, shared standard
    library classes included, are read-only.
    """

    def __init__(self):
        self.builtins: dict[str, Any] = {}
        self._classes = weakref.WeakSet()
        self._modules = weakref.WeakSet()

    def adopt(self, module: types.ModuleType):
        self._modules.add(module)

    def build_class(self, func, name, *bases, **kwargs):
        cls = builtins.__build_class__(func, name, *bases, **kwargs)
        self._classes.add(cls)
        return cls

    def writable(self, obj: Any) -> bool:
        if isinstance(obj, types.ModuleType):
            return obj in self._modules
        if isinstance(obj, types.FunctionType):
            return obj.__globals__.get("__builtins__") is self.builtins
        cls = obj if isinstance(obj, type) else type(obj)
        return any(base in self._classes for base in cls.__mro__)

    def write(self, obj: Any) -> Any:
        if not self.writable(obj):
            raise AttributeError(f"cannot modify attributes of {type(obj).__name__!r} object")
        return obj

    def getattr(self, obj, name, *default):
        _check_attribute(name)
        if name in FORMAT_METHODS:
            _check_format(obj, name)
        return getattr(obj, name, *default)

    def hasattr(self, obj, name):
        _check_attribute(name)
        return hasattr(obj, name)

    def setattr(self, obj, name, value):
        _check_attribute(name)
        setattr(self.write(obj), name, value)

    def delattr(self, obj, name):
        _check_attribute(name)
        delattr(self.write(obj), name)


class _GuardTransformer(ast.NodeTransformer):
    """Route attribute writes and ``str.format()`` lookups through the guards."""

    def visit_Attribute(self, node: ast.Attribute):
        self.generic_visit(node)
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            guard = ast.Call(func=ast.Name(id=WRITE_GUARD, ctx=ast.Load()), args=[node.value], keywords=[])
            node.value = ast.copy_location(guard, node.value)
            return node
        if node.attr in FORMAT_METHODS:
            lookup = ast.Call(
                func=ast.Name(id=READ_GUARD, ctx=ast.Load()),
                args=[node.value, ast.Constant(value=node.attr)],
                keywords=[],
            )
            return ast.copy_location(lookup, node)
        return node


def _compile(source: str, path: str) -> types.CodeType:
    tree = _GuardTransformer().visit(ast.parse(source, filename=path))
    return compile(ast.fix_missing_locations(tree), path, "exec")


def _print(*args, sep=" ", end="\n", file=None, flush=False):
    script_logger.info(sep.join(str(arg) for arg in args))


def _make_builtins(guards: _Guards) -> dict[str, Any]:
    table = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    for name, value in vars(builtins).items():
        if isinstance(value, type) and issubclass(value, BaseException):
            table[name] = value
    table.update(
        getattr=guards.getattr,
        hasattr=guards.hasattr,
        setattr=guards.setattr,
        delattr=guards.delattr,
        print=_print,
        __build_class__=guards.build_class,
    )
    table[WRITE_GUARD] = guards.write
    table[READ_GUARD] = guards.getattr
    guards.builtins = table
    return table


def _resolve_relative(name: str, package: str, level: int) -> str:
    parts = package.split(".") if package else []
    if level - 1 > len(parts):
        raise ImportError("attempted relative import beyond the script directory")
    base = parts[:len(parts) - (level - 1)]
    return ".".join(base + ([name] if name else []))


class _Importer:
    """Per-instance replacement for ``__import__`` and ``sys.modules``."""

    def __init__(self, bundle: Bundle, guards: _Guards):
        self._bundle = bundle
        self._guards = guards
        self._builtins = guards.builtins
        self._stdlib = get_allowed_modules()
        # "" is the script directory, parent of every top-level local module
        self._modules: dict[str, types.ModuleType] = {"": types.ModuleType("")}

    def register(self, name: str, module: types.ModuleType):
        parent = name.rpartition(".")[0]
        if parent and parent not in self._modules:
            self.register(parent, types.ModuleType(parent))
        self._modules[name] = module
        self._guards.adopt(module)
        self._attach(name, module)

    def __call__(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            package = (globals or {}).get("__package__") or ""
            name = _resolve_relative(name, package, level)

        module = self._load(name)
        if fromlist:
            for item in fromlist:
                sub = f"{name}.{item}" if name else item
                if not hasattr(module, item) and sub in self._bundle.modules:
                    self._load(sub)
            return module
        return self._modules[name.partition(".")[0]]

    def _load(self, name: str) -> types.ModuleType:
        if name in self._modules:
            return self._modules[name]
        if name in self._bundle.modules:
            return self._exec_local(name)
        if name in self._stdlib:
            return self._stdlib_view(name)
        raise ModuleNotFoundError(f"No module named {name!r} is available to scripts", name=name)

    def _exec_local(self, name: str) -> types.ModuleType:
        parent = name.rpartition(".")[0]
        if parent:
            self._load(parent)

        is_package = name in self._bundle.packages
        module = types.ModuleType(name)
        module.__dict__.update(
            __builtins__=self._builtins,
            __package__=name if is_package else parent,
        )
        self.register(name, module)
        try:
            code = _compile(self._bundle.modules[name], self._bundle.paths.get(name, name))
            exec(code, module.__dict__)
        except BaseException:
            del self._modules[name]
            raise
        return module

    def _stdlib_view(self, name: str) -> types.ModuleType:
        # A copy, so a script rebinding json.dumps cannot reach the host or other instances
        real = importlib.import_module(name)
        hidden = HIDDEN_MEMBERS.get(name, frozenset())
        public = getattr(real, "__all__", None) or [key for key in vars(real) if not key.startswith("_")]
        view = types.ModuleType(name, real.__doc__)
        for key in public:
            if key in hidden or not hasattr(real, key):
                continue
            value = getattr(real, key)
            if isinstance(value, types.ModuleType):
                continue
            if isinstance(value, (dict, list, set, bytearray)):
                value = copy.deepcopy(value)
            setattr(view, key, value)
        self.register(name, view)
        return view

    def _attach(self, name: str, module: types.ModuleType):
        parent, _, child = name.rpartition(".")
        if parent in self._modules:
            setattr(self._modules[parent], child, module)


def _host_module(slot: dict[str, Any], assets: dict[str, Any]) -> types.ModuleType:
    module = types.ModuleType(RESERVED_MODULE, "Host API available to scripts.")

    def default(fn):
        """Mark ``fn`` as the script's extraction function."""
        slot[DEFAULT_EXPORT] = fn
        return fn

    def embed(path: str):
        """Return the contents of a file bundled with the script."""
        key = asset_key(path)
        if key not in assets:
            raise ValueError(f"asset {path!r} was not bundled with the script")
        return copy.deepcopy(assets[key])

    module.default = default
    module.embed = embed
    return module


def _synthetic_module(name: str, members: dict[str, Any]) -> types.ModuleType:
    module = types.ModuleType(name)
    for ident, value in members.items():
        setattr(module, ident, value)
    return module


def _collect_exports(
    namespace: dict[str, Any], slot: dict[str, Any], host_ids: set[int], imported: frozenset[str]
) -> Exports:
    names = namespace.get("__all__")
    if names is None:
        # importing a name does not export it
        names = [key for key in namespace if not key.startswith("_") and key not in imported]

    exports = Exports()
    for key in names:
        if key not in namespace:
            raise InstantiationError(f"__all__ names undefined export {key!r}")
        value = namespace[key]
        if isinstance(value, types.ModuleType) or (callable(value) and id(value) in host_ids):
            continue
        exports[key] = value
    if DEFAULT_EXPORT in slot:
        exports[DEFAULT_EXPORT] = slot[DEFAULT_EXPORT]

    if not exports:
        return exports

    fn = exports.get(DEFAULT_EXPORT)
    if fn is None or not callable(fn):
        raise InstantiationError("default export is not defined")
    exports[SCRAPE_EXPORT] = Extractor(fn)
    return exports


def instantiate(bundle: Bundle, imports: Imports | None = None) -> Exports:
    """
    Evaluate a bundle in a fresh sandbox and collect its exports.

    Args:
        bundle: Output of :func:`pagescript.transform.transform`
        imports: Host modules, module name -> identifier -> value

    Returns:
        The script's exports. Empty (without an error) when the script exports
        nothing at all.

    Raises:
        InstantiationError: If evaluation fails, an import name is reserved,
            or the script exports values but no default function
    """
    imports = imports or {}
    if RESERVED_MODULE in imports:
        raise InstantiationError(f"import name {RESERVED_MODULE!r} is reserved")

    slot: dict[str, Any] = {}
    guards = _Guards()
    builtins_table = _make_builtins(guards)
    importer = _Importer(bundle, guards)
    builtins_table["__import__"] = importer

    host = _host_module(slot, bundle.assets)
    importer.register(RESERVED_MODULE, host)
    host_ids = {id(host.default), id(host.embed)}
    for name in sorted(imports, key=lambda n: n.count(".")):
        importer.register(name, _synthetic_module(name, imports[name]))
        host_ids.update(id(value) for value in imports[name].values())

    namespace = {
        "__name__": ENTRY_MODULE,
        "__package__": "",
        "__builtins__": builtins_table,
    }
    try:
        code = _compile(bundle.source, ENTRY_PATH)
        exec(code, namespace)
    except (Exception, SystemExit) as e:
        raise InstantiationError(f"running user script: {e}") from e

    exports = _collect_exports(namespace, slot, host_ids, bundle.imported)
    logger.debug("Instantiated script with exports %s", sorted(exports))
    return exports
