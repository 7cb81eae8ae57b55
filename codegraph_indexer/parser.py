"""Parser contract and shared tree-sitter plumbing.

Each language plugs in through :class:`LanguageParser`:

- ``parse`` turns one file's text into a :class:`ParsedFile` (pure, single pass).
- ``pre_scan`` reports the names a batch of files declares or exports so the
  pipeline can resolve cross-file references before anything is written.
"""

from __future__ import annotations

import importlib
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import ImportsMap, Location, ParsedFile, SourceFile

logger = logging.getLogger(__name__)

MAX_ARG_CHARS = 100
MAX_VALUE_CHARS = 200


# ===================================================================
# Abstract Parser Interface
# ===================================================================

class LanguageParser(ABC):
    """Abstract base class for all language parsers."""

    supported_extensions: Tuple[str, ...] = ()
    language_name: str = ""

    @abstractmethod
    def parse(self, source: str, file_path: str, is_dependency: bool = False) -> ParsedFile:
        """Parse *source* into a :class:`ParsedFile`.

        Raises :class:`~codegraph_indexer.errors.ParseError` when the text
        cannot be parsed at all.
        """

    @abstractmethod
    def pre_scan(self, files: Sequence[SourceFile]) -> ImportsMap:
        """Return the declared/exported names of *files*."""

    def supports(self, file_path: str) -> bool:
        return os.path.splitext(file_path)[1].lower() in self.supported_extensions


# ===================================================================
# Imports map helpers
# ===================================================================

def add_location(imports_map: ImportsMap, name: str, file_path: str, line_number: int) -> None:
    imports_map.setdefault(name, []).append(Location(file_path, line_number))


def merge_imports_maps(target: ImportsMap, partial: ImportsMap) -> ImportsMap:
    """Append every location of *partial* into *target*; never overwrite."""
    for name, locations in partial.items():
        bucket = target.setdefault(name, [])
        for loc in locations:
            if loc not in bucket:
                bucket.append(loc)
    return target


def drop_file_from_map(imports_map: ImportsMap, file_path: str) -> None:
    """Remove every location that points into *file_path*."""
    for name in list(imports_map):
        kept = [loc for loc in imports_map[name] if loc.file_path != file_path]
        if kept:
            imports_map[name] = kept
        else:
            del imports_map[name]


# ===================================================================
# Tree-sitter base
# ===================================================================

class TreeSitterParser(LanguageParser):
    """Base for parsers backed by a tree-sitter grammar package.

    Subclasses set ``grammar_module`` (e.g. ``"tree_sitter_javascript"``),
    plus the node types that count towards cyclomatic complexity.
    """

    grammar_module: str = ""
    function_types: Tuple[str, ...] = ()
    class_types: Tuple[str, ...] = ()
    branch_types: Tuple[str, ...] = ()
    logical_operators: Tuple[str, ...] = ()

    def __init__(self) -> None:
        from tree_sitter import Language, Parser as TSParser  # type: ignore[import-untyped]

        mod = importlib.import_module(self.grammar_module)
        self._language = Language(mod.language())
        self._parser = TSParser(self._language)

    def _parse_tree(self, source: str) -> Any:
        return self._parser.parse(source.encode("utf-8"))

    # ------------------------------------------------------------------
    # Node helpers
    # ------------------------------------------------------------------

    @staticmethod
    def text(node: Any) -> str:
        if node is None or node.text is None:
            return ""
        return node.text.decode("utf-8", errors="replace")

    @classmethod
    def field_text(cls, node: Any, field_name: str) -> str:
        return cls.text(node.child_by_field_name(field_name))

    @staticmethod
    def line(node: Any) -> int:
        return node.start_point[0] + 1

    @staticmethod
    def end_line(node: Any) -> int:
        return node.end_point[0] + 1

    @staticmethod
    def walk(node: Any) -> Iterable[Any]:
        """Yield *node* and every descendant, depth first."""
        stack = [node]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.children))

    @classmethod
    def descendants(cls, node: Any, *types: str) -> List[Any]:
        return [n for n in cls.walk(node) if n.type in types]

    # ------------------------------------------------------------------
    # Metrics and context
    # ------------------------------------------------------------------

    def cyclomatic_complexity(self, node: Any) -> int:
        complexity = 1
        for current in self.walk(node):
            if current.type in self.branch_types:
                complexity += 1
            elif current.type == "binary_expression":
                operator = current.child_by_field_name("operator")
                if operator is not None and operator.type in self.logical_operators:
                    complexity += 1
        return complexity

    def doc_comment(self, node: Any) -> Optional[str]:
        """The block doc comment (``/** ... */``) right before *node*."""
        target = node
        if target.parent is not None and target.parent.type in ("export_statement", "lexical_declaration",
                                                                "variable_declaration"):
            target = target.parent
            if target.parent is not None and target.parent.type == "export_statement":
                target = target.parent
        prev = target.prev_named_sibling
        if prev is not None and prev.type == "comment":
            raw = self.text(prev)
            if raw.startswith("/**"):
                return raw
        return None

    def _bound_declarator(self, node: Any) -> Optional[Any]:
        """The ``variable_declarator`` a function value is assigned to, if any."""
        parent = node.parent
        if parent is None or parent.type != "variable_declarator":
            return None
        name = parent.child_by_field_name("name")
        return parent if name is not None and name.type == "identifier" else None

    def function_name(self, node: Any) -> Optional[str]:
        """Name of a function-like node, if it has one.

        ``const x = function y() {}`` is named ``x``: the binding wins over the
        expression's own name.
        """
        declarator = self._bound_declarator(node)
        if declarator is not None:
            return self.field_text(declarator, "name")
        name = node.child_by_field_name("name")
        return self.text(name) if name is not None else None

    def enclosing_function(self, node: Any) -> Tuple[Optional[str], Optional[int]]:
        current = node.parent
        while current is not None:
            if current.type in self.function_types:
                name = self.function_name(current)
                if name:
                    anchor = self._bound_declarator(current) or current
                    return name, self.line(anchor)
            current = current.parent
        return None, None

    def enclosing_class(self, node: Any) -> Optional[str]:
        current = node.parent
        while current is not None:
            if current.type in self.class_types:
                return self.field_text(current, "name") or None
            current = current.parent
        return None


# ===================================================================
# Registry
# ===================================================================

def default_parsers() -> List[LanguageParser]:
    """Instantiate every built-in parser."""
    from .lang_javascript import JavaScriptParser
    from .lang_python import PythonParser

    return [JavaScriptParser(), PythonParser()]


def parser_map(parsers: Iterable[LanguageParser]) -> Dict[str, LanguageParser]:
    """Map each supported extension to the parser that owns it."""
    mapping: Dict[str, LanguageParser] = {}
    for parser in parsers:
        for ext in parser.supported_extensions:
            mapping[ext] = parser
    return mapping
