"""Chainable query document over a parsed HTML tree.

Every traversal returns a new :class:`Document`; nothing mutates the tree.
Lookups never raise on missing markup: absent attributes give ``""`` and
selectors that match nothing (or fail to parse) give an empty document.
"""

import logging
from typing import Any, Callable, Iterable, Iterator

import soupsieve
from bs4 import BeautifulSoup, Tag

from .config import get_html_parser

logger = logging.getLogger(__name__)


def _unique(nodes: Iterable[Tag]) -> tuple[Tag, ...]:
    # Tag.__eq__ compares markup, so identical elements must be told apart by id
    seen: set[int] = set()
    out = []
    for node in nodes:
        if id(node) not in seen:
            seen.add(id(node))
            out.append(node)
    return tuple(out)


def _element_siblings(node: Tag, forward: bool) -> Iterator[Tag]:
    siblings = node.next_siblings if forward else node.previous_siblings
    return (s for s in siblings if isinstance(s, Tag))


def _compile(selector: str):
    try:
        return soupsieve.compile(selector)
    except (soupsieve.SelectorSyntaxError, TypeError) as e:
        logger.debug("Ignoring invalid selector %r: %s", selector, e)
        return None


class Document:
    """A read-only view over a set of HTML elements."""

    WARNING = "Forgot to call text(), html() or attr()?"

    def __init__(self, nodes: Iterable[Tag] = ()):
        self._nodes = _unique(nodes)

    @classmethod
    def from_html(cls, html: str, parser: str | None = None) -> "Document":
        """Parse markup and return a document rooted at the whole tree."""
        return cls([BeautifulSoup(html, parser or get_html_parser())])

    # --- scalars ---

    @property
    def length(self) -> int:
        """Number of elements."""
        return len(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def text(self) -> str:
        """Concatenated text of every element."""
        return "".join(node.get_text() for node in self._nodes)

    def html(self) -> str:
        """Outer markup of the first element."""
        if not self._nodes:
            return ""
        return str(self._nodes[0])

    def name(self) -> str:
        """Tag name of the first element."""
        if not self._nodes or isinstance(self._nodes[0], BeautifulSoup):
            return ""
        return self._nodes[0].name or ""

    def attr(self, name: str) -> str:
        """Attribute of the first element, ``""`` when absent."""
        if not self._nodes:
            return ""
        value = self._nodes[0].get(name)
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return " ".join(value)
        return str(value)

    def has_attr(self, name: str) -> bool:
        """Whether the first element carries the attribute."""
        return bool(self._nodes) and self._nodes[0].has_attr(name)

    def has_class(self, name: str) -> bool:
        """Whether any element carries the class."""
        return any(name in node.get("class", ()) for node in self._nodes)

    # --- positional ---

    def first(self) -> "Document":
        """The first element."""
        return Document(self._nodes[:1])

    def last(self) -> "Document":
        """The last element."""
        return Document(self._nodes[-1:])

    def get(self, index: int) -> "Document":
        """The element at ``index``; negative indices count from the end."""
        if index < 0:
            index += len(self._nodes)
        if 0 <= index < len(self._nodes):
            return Document([self._nodes[index]])
        return Document()

    # --- traversal ---

    def find(self, selector: str) -> "Document":
        """Descendants matching a CSS selector."""
        matcher = _compile(selector)
        if matcher is None:
            return Document()
        return Document(match for node in self._nodes for match in matcher.select(node))

    def children(self) -> "Document":
        """Child elements."""
        return Document(child for node in self._nodes for child in node.children if isinstance(child, Tag))

    def parent(self) -> "Document":
        """Parent elements."""
        parents = (node.parent for node in self._nodes)
        return Document(p for p in parents if p is not None and not isinstance(p, BeautifulSoup))

    def siblings(self) -> "Document":
        """Sibling elements, excluding the elements themselves."""
        out = []
        for node in self._nodes:
            if node.parent is None:
                continue
            out.extend(s for s in node.parent.children if isinstance(s, Tag) and s is not node)
        return Document(out)

    def next(self) -> "Document":
        """The next sibling element of each element."""
        return Document(self._step(forward=True))

    def prev(self) -> "Document":
        """The previous sibling element of each element."""
        return Document(self._step(forward=False))

    def next_all(self) -> "Document":
        """All following sibling elements."""
        return Document(s for node in self._nodes for s in _element_siblings(node, forward=True))

    def prev_all(self) -> "Document":
        """All preceding sibling elements, closest first."""
        return Document(s for node in self._nodes for s in _element_siblings(node, forward=False))

    def next_until(self, selector: str) -> "Document":
        """Following siblings up to, not including, the first match."""
        return Document(self._until(selector, forward=True))

    def prev_until(self, selector: str) -> "Document":
        """Preceding siblings up to, not including, the first match."""
        return Document(self._until(selector, forward=False))

    def _step(self, forward: bool) -> Iterator[Tag]:
        for node in self._nodes:
            sibling = next(_element_siblings(node, forward), None)
            if sibling is not None:
                yield sibling

    def _until(self, selector: str, forward: bool) -> Iterator[Tag]:
        matcher = _compile(selector)
        for node in self._nodes:
            for sibling in _element_siblings(node, forward):
                if matcher is not None and matcher.match(sibling):
                    break
                yield sibling

    # --- iteration ---

    def __iter__(self) -> Iterator["Document"]:
        return (Document([node]) for node in self._nodes)

    def map(self, fn: Callable[["Document", int], Any]) -> list:
        """Call ``fn(element, index)`` for each element and collect the results."""
        return [fn(Document([node]), i) for i, node in enumerate(self._nodes)]

    def filter(self, fn: Callable[["Document", int], Any]) -> list["Document"]:
        """Elements for which ``fn(element, index)`` is truthy."""
        out = []
        for i, node in enumerate(self._nodes):
            doc = Document([node])
            if fn(doc, i):
                out.append(doc)
        return out

    def __repr__(self) -> str:
        return f"<Document length={len(self._nodes)}>"
