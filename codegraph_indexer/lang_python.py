"""Python parser built on the standard-library :mod:`ast` module."""

from __future__ import annotations

import ast
import logging
from typing import List, Optional, Sequence, Tuple, Union

from .errors import ParseError
from .models import (
    ImportsMap,
    ParsedCall,
    ParsedClass,
    ParsedFile,
    ParsedFunction,
    ParsedImport,
    ParsedVariable,
    SourceFile,
)
from .parser import MAX_ARG_CHARS, MAX_VALUE_CHARS, LanguageParser, add_location

logger = logging.getLogger(__name__)

FunctionNode = Union[ast.FunctionDef, ast.AsyncFunctionDef]

_BRANCH_NODES = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.ExceptHandler, ast.IfExp,
    ast.comprehension,
)
_ABSTRACT_MARKERS = {"ABC", "abc.ABC", "Protocol", "typing.Protocol"}


class PythonParser(LanguageParser):
    """Extracts the same entities as the JavaScript parser from Python code."""

    language_name = "python"
    supported_extensions = (".py",)

    def parse(self, source: str, file_path: str, is_dependency: bool = False) -> ParsedFile:
        try:
            tree = ast.parse(source, filename=file_path)
        except (SyntaxError, ValueError) as exc:
            raise ParseError(file_path, str(exc)) from exc
        parsed = ParsedFile(
            path=file_path,
            lang=self.language_name,
            source=None if is_dependency else source,
            is_dependency=is_dependency,
        )
        _Visitor(parsed, source, is_dependency).visit(tree)
        return parsed

    def pre_scan(self, files: Sequence[SourceFile]) -> ImportsMap:
        imports_map: ImportsMap = {}
        for item in files:
            try:
                tree = ast.parse(item.source, filename=item.path)
            except (SyntaxError, ValueError) as exc:
                logger.warning("Pre-scan skipped %s: %s", item.path, exc)
                continue
            for node in ast.walk(tree):
                if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                    add_location(imports_map, node.name, item.path, node.lineno)
        return imports_map


def cyclomatic_complexity(node: ast.AST) -> int:
    complexity = 1
    for child in ast.walk(node):
        if isinstance(child, _BRANCH_NODES):
            complexity += 1
        elif isinstance(child, ast.BoolOp):
            complexity += len(child.values) - 1
        elif isinstance(child, ast.match_case):
            complexity += 1
    return complexity


def _expr_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


class _Visitor(ast.NodeVisitor):
    """Walks a module keeping a stack of enclosing functions and classes."""

    def __init__(self, parsed: ParsedFile, source: str, is_dependency: bool) -> None:
        self.parsed = parsed
        self.source = source
        self.is_dependency = is_dependency
        self.functions: List[Tuple[str, int]] = []
        self.classes: List[str] = []

    @property
    def context(self) -> Optional[str]:
        return self.functions[-1][0] if self.functions else None

    @property
    def class_context(self) -> Optional[str]:
        return self.classes[-1] if self.classes else None

    def _segment(self, node: ast.AST) -> Optional[str]:
        if self.is_dependency:
            return None
        return ast.get_source_segment(self.source, node)

    # -- definitions ----------------------------------------------------

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        bases = [ast.unparse(base) for base in node.bases]
        metaclass = next((ast.unparse(k.value) for k in node.keywords if k.arg == "metaclass"), "")
        self.parsed.classes.append(ParsedClass(
            name=node.name,
            line_number=node.lineno,
            end_line=getattr(node, "end_lineno", node.lineno),
            bases=bases,
            is_abstract=bool(_ABSTRACT_MARKERS.intersection(bases)) or metaclass.endswith("ABCMeta"),
            is_interface="Protocol" in bases or "typing.Protocol" in bases,
            source=self._segment(node),
            docstring=ast.get_docstring(node),
            context=self.context,
        ))
        self.classes.append(node.name)
        self.generic_visit(node)
        self.classes.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node)

    def _visit_function(self, node: FunctionNode) -> None:
        decorators = [ast.unparse(d) for d in node.decorator_list]
        kind = None
        if self.class_context and self.context is None:
            if node.name == "__init__":
                kind = "constructor"
            elif "staticmethod" in decorators or "classmethod" in decorators:
                kind = "static"
            elif "property" in decorators:
                kind = "getter"
            elif any(d.endswith(".setter") for d in decorators):
                kind = "setter"
        args = node.args
        names = [a.arg for a in args.posonlyargs + args.args]
        if args.vararg:
            names.append("*" + args.vararg.arg)
        names.extend(a.arg for a in args.kwonlyargs)
        if args.kwarg:
            names.append("**" + args.kwarg.arg)
        self.parsed.functions.append(ParsedFunction(
            name=node.name,
            line_number=node.lineno,
            end_line=getattr(node, "end_lineno", node.lineno),
            args=names,
            source=self._segment(node),
            docstring=ast.get_docstring(node),
            cyclomatic_complexity=cyclomatic_complexity(node),
            context=self.context,
            class_context=self.class_context,
            kind=kind,
            is_async=isinstance(node, ast.AsyncFunctionDef),
            decorators=decorators,
        ))
        self.functions.append((node.name, node.lineno))
        self.generic_visit(node)
        self.functions.pop()

    # -- imports --------------------------------------------------------

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.parsed.imports.append(ParsedImport(
                name=alias.name, source=alias.name, line_number=node.lineno,
                alias=alias.asname, is_default=True,
            ))

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        module = "." * node.level + (node.module or "")
        for alias in node.names:
            self.parsed.imports.append(ParsedImport(
                name=alias.name, source=module, line_number=node.lineno,
                alias=alias.asname, is_namespace=alias.name == "*",
            ))

    # -- calls ----------------------------------------------------------

    def visit_Call(self, node: ast.Call) -> None:
        name = _expr_name(node.func)
        if name:
            full_name = obj = None
            if isinstance(node.func, ast.Attribute):
                full_name = ast.unparse(node.func)
                obj = ast.unparse(node.func.value)
            args = [ast.unparse(a)[:MAX_ARG_CHARS] for a in node.args]
            args.extend(ast.unparse(k)[:MAX_ARG_CHARS] for k in node.keywords)
            context_line = self.functions[-1][1] if self.functions else None
            self.parsed.calls.append(ParsedCall(
                name=name,
                line_number=node.lineno,
                args=args,
                full_name=full_name,
                inferred_obj_type=obj,
                context=self.context,
                context_line=context_line,
                class_context=self.class_context,
            ))
        self.generic_visit(node)

    # -- variables ------------------------------------------------------

    def visit_Assign(self, node: ast.Assign) -> None:
        for target in node.targets:
            if isinstance(target, ast.Name):
                self._variable(target.id, node.lineno, node.value, None)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if isinstance(node.target, ast.Name):
            self._variable(node.target.id, node.lineno, node.value, ast.unparse(node.annotation))
        self.generic_visit(node)

    def _variable(self, name: str, line: int, value: Optional[ast.AST], annotation: Optional[str]) -> None:
        if self.is_dependency or isinstance(value, ast.Lambda):
            return
        self.parsed.variables.append(ParsedVariable(
            name=name,
            line_number=line,
            value=ast.unparse(value)[:MAX_VALUE_CHARS] if value is not None else None,
            type=annotation,
            context=self.context,
            class_context=self.class_context,
        ))
