"""Unit tests for pagescript/sandbox.py instantiation and exports."""

import json
import logging
import textwrap

import pytest

from pagescript.core import compile as compile_script
from pagescript.errors import CompileError, ExecutionError, InstantiationError
from pagescript.sandbox import SCRAPE_EXPORT, Exports, instantiate
from pagescript.transform import transform
from pagescript.types import ScrapeParams


def _script(src: str) -> str:
    return textwrap.dedent(src).lstrip()


def _params(html: str = "<p>x</p>", url: str = "https://e.com/") -> ScrapeParams:
    return ScrapeParams(html=html, url=url, fetch=lambda u: "")


BASIC = _script("""
    from pagescript import default

    config = {"url": "https://e.com/", "depth": 1}

    @default
    def extract(page):
        return page.doc.find("p").text()
""")


class TestExports:
    """Tests for export collection and the default export."""

    def test_config_and_default(self):
        exports = compile_script(BASIC)
        assert "default" in exports
        assert "extract" in exports
        assert json.loads(exports.config()) == {"url": "https://e.com/", "depth": 1}
        assert exports.invoke(_params()) == "x"

    def test_host_values_are_not_exported(self):
        exports = compile_script(BASIC)
        assert set(exports) == {"config", "extract", "default", SCRAPE_EXPORT}

    def test_config_absent(self):
        exports = compile_script("from pagescript import default\n\n@default\ndef run(page):\n    return 1\n")
        assert exports.config() == b""

    def test_missing_default_export(self):
        with pytest.raises(InstantiationError, match="default export is not defined"):
            compile_script("config = {'url': 'https://e.com/'}\n")

    def test_non_callable_default(self):
        with pytest.raises(InstantiationError, match="default export is not defined"):
            compile_script("default = 5\n")

    def test_plain_default_function(self):
        exports = compile_script("def default(page):\n    return page.url\n")
        assert exports.invoke(_params(url="https://e.com/a")) == "https://e.com/a"

    def test_empty_script_compiles_to_empty_exports(self):
        exports = compile_script("")
        assert exports == {}
        assert exports.config() == b""

    def test_import_only_script_compiles_to_empty_exports(self):
        assert compile_script("from pagescript import default\n") == {}

    def test_stdlib_import_only_script_compiles_to_empty_exports(self):
        assert compile_script("from json import loads\nimport re\n") == {}

    def test_imported_names_are_not_exported(self):
        exports = compile_script("from json import dumps\n\ndef default(page):\n    return dumps([1])\n")
        assert "dumps" not in exports
        assert exports.invoke(_params()) == "[1]"

    def test_imported_names_listed_in_dunder_all_are_exported(self):
        exports = compile_script("from json import dumps as default\n__all__ = ['default']\n")
        assert exports["default"] is not None

    def test_invoking_empty_exports_fails(self):
        with pytest.raises(InstantiationError, match="default export is not defined"):
            Exports().invoke(_params())

    def test_dunder_all_limits_exports(self):
        src = _script("""
            __all__ = ["default", "config"]
            config = {}
            helper = 1

            def default(page):
                return helper
        """)
        exports = compile_script(src)
        assert "helper" not in exports
        assert exports.invoke(_params()) == 1

    def test_dunder_all_with_undefined_name(self):
        with pytest.raises(InstantiationError, match="undefined export"):
            compile_script("__all__ = ['missing']\n")


class TestEvaluation:
    """Tests for evaluation failures and the restricted builtins."""

    def test_top_level_exception(self):
        with pytest.raises(InstantiationError, match="running user script") as exc_info:
            compile_script("raise ValueError('nope')\n")
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_system_exit_does_not_escape(self):
        with pytest.raises(InstantiationError):
            compile_script("raise SystemExit(1)\n")

    def test_open_is_not_available(self):
        with pytest.raises(InstantiationError) as exc_info:
            compile_script("open('/etc/passwd')\n")
        assert isinstance(exc_info.value.__cause__, NameError)

    def test_eval_is_not_available(self):
        with pytest.raises(InstantiationError):
            compile_script("eval('1 + 1')\n")

    def test_getattr_refuses_dunder_names(self):
        with pytest.raises(InstantiationError) as exc_info:
            compile_script("x = getattr(1, '__cl' + 'ass__')\n")
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_getattr_allows_regular_names(self):
        exports = compile_script("def default(page):\n    return getattr(page, 'url')\n")
        assert exports.invoke(_params()) == "https://e.com/"

    def test_classes_work(self):
        src = _script("""
            class Base:
                def __init__(self):
                    self.kind = "base"

            class Child(Base):
                def __init__(self):
                    super().__init__()
                    self.kind += "+child"

            def default(page):
                return Child().kind
        """)
        assert compile_script(src).invoke(_params()) == "base+child"

    def test_print_goes_to_script_logger(self, caplog):
        caplog.set_level(logging.INFO, logger="pagescript.script")
        compile_script("print('hello', 42)\n")
        assert "hello 42" in caplog.text

    def test_unknown_host_module(self):
        with pytest.raises(InstantiationError) as exc_info:
            compile_script("from pagescript.nope import thing\n")
        assert isinstance(exc_info.value.__cause__, ImportError)

    def test_disallowed_module_fails_at_compile_time(self):
        with pytest.raises(CompileError):
            compile_script("import subprocess\n")


class TestImports:
    """Tests for host modules supplied through the Imports Table."""

    def test_host_module_functions(self):
        src = _script("""
            from pagescript import default
            from pagescript.http import greet

            @default
            def run(page):
                return greet("bob")
        """)
        exports = compile_script(src, {"pagescript.http": {"greet": lambda name: f"hi {name}"}})
        assert exports.invoke(_params()) == "hi bob"
        assert "greet" not in exports

    def test_dotted_import_of_host_module(self):
        src = _script("""
            import pagescript.http

            def default(page):
                return pagescript.http.VERSION
        """)
        exports = compile_script(src, {"pagescript.http": {"VERSION": "1.0"}})
        assert exports.invoke(_params()) == "1.0"

    def test_host_module_outside_reserved_namespace(self):
        src = "from hostlib import answer\n\ndef default(page):\n    return answer()\n"
        exports = compile_script(src, {"hostlib": {"answer": lambda: 42}})
        assert exports.invoke(_params()) == 42

    def test_reserved_import_name(self):
        bundle = transform("x = 1\n")
        with pytest.raises(InstantiationError, match="reserved"):
            instantiate(bundle, {"pagescript": {}})


class TestIsolation:
    """Tests that instances never share state."""

    SRC = _script("""
        seen = []

        def default(page):
            seen.append(page.url)
            return len(seen)
    """)

    def test_instances_have_separate_namespaces(self):
        bundle = transform(self.SRC)
        first = instantiate(bundle)
        second = instantiate(bundle)

        assert first.invoke(_params()) == 1
        assert first.invoke(_params()) == 2
        assert second.invoke(_params()) == 1

    def test_stdlib_modules_are_copies(self):
        import json as host_json

        compile_script("import json\njson.dumps = None\n")
        assert host_json.dumps is not None

        exports = compile_script("import json\n\ndef default(page):\n    return json.dumps([1])\n")
        assert exports.invoke(_params()) == "[1]"


class TestLocalModules:
    """Tests for bundled local modules and embedded assets at run time."""

    def test_local_module_and_asset(self, tmp_path):
        (tmp_path / "selectors.json").write_text('{"title": "h1"}')
        (tmp_path / "helpers.py").write_text(_script("""
            from pagescript import embed

            SELECTORS = embed("selectors.json")

            def title(doc):
                return doc.find(SELECTORS["title"]).text()
        """))
        src = _script("""
            from helpers import title

            def default(page):
                return title(page.doc)
        """)

        exports = compile_script(src, resolve_dir=tmp_path)

        assert exports.invoke(_params(html="<h1>Hello</h1>")) == "Hello"

    def test_relative_package_imports(self, tmp_path):
        pkg = tmp_path / "parsing"
        pkg.mkdir()
        (pkg / "__init__.py").write_text("from .rules import clean\n")
        (pkg / "rules.py").write_text("def clean(s):\n    return s.strip().lower()\n")
        src = _script("""
            from . import parsing

            def default(page):
                return parsing.clean(page.doc.text())
        """)

        exports = compile_script(src, resolve_dir=tmp_path)

        assert exports.invoke(_params(html="<p>  HeLLo </p>")) == "hello"

    def test_embedded_assets_are_copied_per_call(self, tmp_path):
        (tmp_path / "data.json").write_text('{"items": []}')
        src = _script("""
            from pagescript import embed

            def default(page):
                data = embed("data.json")
                data["items"].append(1)
                return data
        """)
        exports = compile_script(src, resolve_dir=tmp_path)
        assert exports.invoke(_params()) == {"items": [1]}
        assert exports.invoke(_params()) == {"items": [1]}


class TestRestrictions:
    """Tests that scripts cannot reach host internals at run time."""

    def _run(self, src: str, params: ScrapeParams | None = None):
        return compile_script(_script(src)).invoke(params or _params())

    def test_attrgetter_route_fails_at_compile_time(self):
        src = _script("""
            import operator
            import json

            def default(page):
                return operator.attrgetter("glo" + "bals")(json.loads)
        """)
        with pytest.raises(CompileError):
            compile_script(src)

    def test_runtime_frame_lookup_refused(self):
        src = """
            def gen():
                yield 1

            def default(page):
                return getattr(gen(), "gi_" + "frame")
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_runtime_private_lookup_refused(self):
        src = """
            def default(page):
                return str(getattr(page, "_" + "params"))
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_hasattr_refuses_private_names(self):
        src = """
            def default(page):
                return hasattr(page.doc, "_" + "nodes")
        """
        with pytest.raises(ExecutionError):
            self._run(src)

    def test_runtime_format_template_refused(self):
        src = """
            def default(page):
                template = "{0." + "_params}"
                return template.format(page)
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_unbound_str_format_refused(self):
        src = """
            def default(page):
                return str.format("{0}", page.url)
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_safe_formatting_still_works(self):
        src = """
            def default(page):
                template = "{0}: {1[n]}"
                return ["{} items".format(3), template.format(page.url, {"n": 1}), f"{page.url!r}"]
        """
        assert self._run(src) == ["3 items", "https://e.com/: 1", "'https://e.com/'"]

    def test_host_objects_are_read_only(self):
        src = """
            def default(page):
                page.url = "https://evil.example/"
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_setattr_on_host_objects_refused(self):
        src = """
            def default(page):
                setattr(page.doc, "text", None)
        """
        with pytest.raises(ExecutionError) as exc_info:
            self._run(src)
        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_shared_stdlib_classes_are_read_only(self):
        import json as host_json

        encode = host_json.JSONEncoder.encode
        with pytest.raises(InstantiationError) as exc_info:
            compile_script("import json\njson.JSONEncoder.encode = None\n")
        assert isinstance(exc_info.value.__cause__, AttributeError)
        assert host_json.JSONEncoder.encode is encode

    def test_script_objects_are_writable(self):
        src = """
            class Counter:
                total = 0

            def bump():
                bump.calls = getattr(bump, "calls", 0) + 1

            def default(page):
                counter = Counter()
                counter.total += 2
                Counter.label = "c"
                bump()
                del counter.total
                return [counter.total, Counter.label, bump.calls]
        """
        assert self._run(src) == [0, "c", 1]

    def test_subclasses_of_stdlib_classes_are_writable(self):
        src = """
            import json

            class Encoder(json.JSONEncoder):
                def __init__(self):
                    super().__init__()
                    self.seen = 0

            def default(page):
                enc = Encoder()
                enc.seen += 1
                return enc.seen
        """
        assert self._run(src) == 1

    def test_hidden_stdlib_members(self):
        with pytest.raises(InstantiationError) as exc_info:
            compile_script("import functools\nwrap = functools.update_wrapper\n")
        assert isinstance(exc_info.value.__cause__, AttributeError)

        exports = compile_script("import functools\n\ndef default(page):\n    return functools.reduce(lambda a, b: a + b, [1, 2, 3])\n")
        assert exports.invoke(_params()) == 6

    def test_stdlib_containers_are_copied(self):
        import hashlib as host_hashlib

        before = set(host_hashlib.algorithms_guaranteed)
        compile_script("import hashlib\nhashlib.algorithms_guaranteed.clear()\n")
        assert host_hashlib.algorithms_guaranteed == before
