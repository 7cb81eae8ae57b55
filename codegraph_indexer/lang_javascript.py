"""JavaScript parser built on the ``tree_sitter_javascript`` grammar."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Set, Tuple

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
from .parser import MAX_ARG_CHARS, MAX_VALUE_CHARS, TreeSitterParser, add_location

logger = logging.getLogger(__name__)

FUNCTION_VALUE_TYPES = ("arrow_function", "function_expression", "function", "generator_function")
CLASS_VALUE_TYPES = ("class", "class_expression")


class JavaScriptParser(TreeSitterParser):
    """Extracts functions, classes, imports, calls and variables from JS/JSX."""

    language_name = "javascript"
    supported_extensions = (".js", ".jsx", ".mjs", ".cjs")
    grammar_module = "tree_sitter_javascript"
    function_types = (
        "function_declaration", "generator_function_declaration", "method_definition",
    ) + FUNCTION_VALUE_TYPES
    class_types = ("class_declaration", "class")
    branch_types = (
        "if_statement", "for_statement", "for_in_statement", "while_statement",
        "do_statement", "switch_case", "catch_clause", "ternary_expression",
    )
    logical_operators = ("&&", "||", "??")

    def parse(self, source: str, file_path: str, is_dependency: bool = False) -> ParsedFile:
        root = self._parse_tree(source).root_node
        parsed = ParsedFile(
            path=file_path,
            lang=self.language_name,
            source=None if is_dependency else source,
            is_dependency=is_dependency,
        )
        for node in self.walk(root):
            kind = node.type
            if kind in ("function_declaration", "generator_function_declaration"):
                parsed.functions.append(self._function(node, node, is_dependency))
            elif kind == "method_definition":
                parsed.functions.append(self._method(node, is_dependency))
            elif kind == "variable_declarator":
                self._declarator(node, parsed, is_dependency)
            elif kind == "class_declaration":
                parsed.classes.append(self._class(node, is_dependency))
            elif kind == "import_statement":
                parsed.imports.extend(self._imports(node))
            elif kind in ("call_expression", "new_expression"):
                call = self._call(node)
                if call is not None:
                    parsed.calls.append(call)
        return parsed

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def _function(self, node: Any, anchor: Any, is_dependency: bool,
                  name: Optional[str] = None) -> ParsedFunction:
        context, _ = self.enclosing_function(anchor)
        return ParsedFunction(
            name=name or self.field_text(node, "name"),
            line_number=self.line(anchor),
            end_line=self.end_line(anchor),
            args=self._params(node),
            source=None if is_dependency else self.text(anchor),
            docstring=self.doc_comment(anchor),
            cyclomatic_complexity=self.cyclomatic_complexity(node),
            context=context,
            class_context=self.enclosing_class(anchor),
            is_async=any(child.type == "async" for child in node.children),
        )

    def _method(self, node: Any, is_dependency: bool) -> ParsedFunction:
        fn = self._function(node, node, is_dependency)
        tokens = {child.type for child in node.children}
        if fn.name == "constructor":
            fn.kind = "constructor"
        elif "get" in tokens:
            fn.kind = "getter"
        elif "set" in tokens:
            fn.kind = "setter"
        elif "static" in tokens:
            fn.kind = "static"
        fn.decorators = [self.text(d).lstrip("@") for d in node.children_by_field_name("decorator")]
        return fn

    def _params(self, node: Any) -> List[str]:
        params = node.child_by_field_name("parameters")
        if params is None:
            single = node.child_by_field_name("parameter")
            return [self.text(single)] if single is not None else []
        names: List[str] = []
        for param in params.named_children:
            if param.type == "identifier":
                names.append(self.text(param))
            elif param.type == "assignment_pattern":
                names.append(self.field_text(param, "left"))
            elif param.type == "rest_pattern":
                inner = param.named_children
                names.append(self.text(inner[0]) if inner else self.text(param))
            elif param.type != "comment":
                names.append(self.text(param))
        return names

    # ------------------------------------------------------------------
    # Variables (and functions/requires bound to variables)
    # ------------------------------------------------------------------

    def _declarator(self, node: Any, parsed: ParsedFile, is_dependency: bool) -> None:
        name_node = node.child_by_field_name("name")
        value = node.child_by_field_name("value")
        if name_node is None:
            return
        if value is not None and value.type in FUNCTION_VALUE_TYPES:
            if name_node.type == "identifier":
                parsed.functions.append(
                    self._function(value, node, is_dependency, name=self.text(name_node))
                )
            return
        if value is not None and value.type in CLASS_VALUE_TYPES:
            return
        if value is not None and self._is_require(value):
            parsed.imports.extend(self._require(name_node, value))
        if is_dependency or name_node.type != "identifier":
            return
        declaration = node.parent
        decl_type = "var"
        if declaration is not None and declaration.type == "lexical_declaration" and declaration.children:
            decl_type = declaration.children[0].type
        context, _ = self.enclosing_function(node)
        parsed.variables.append(ParsedVariable(
            name=self.text(name_node),
            line_number=self.line(node),
            value=self.text(value)[:MAX_VALUE_CHARS] if value is not None else None,
            type=decl_type,
            context=context,
            class_context=self.enclosing_class(node),
        ))

    # ------------------------------------------------------------------
    # Classes
    # ------------------------------------------------------------------

    def _class(self, node: Any, is_dependency: bool) -> ParsedClass:
        bases: List[str] = []
        for child in node.children:
            if child.type == "class_heritage":
                bases.extend(self.text(expr) for expr in child.named_children)
        context, _ = self.enclosing_function(node)
        return ParsedClass(
            name=self.field_text(node, "name"),
            line_number=self.line(node),
            end_line=self.end_line(node),
            bases=bases,
            source=None if is_dependency else self.text(node),
            docstring=self.doc_comment(node),
            context=context,
        )

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_quotes(raw: str) -> str:
        return raw.strip("'\"`")

    def _imports(self, node: Any) -> List[ParsedImport]:
        source = self._strip_quotes(self.field_text(node, "source"))
        line = self.line(node)
        found: List[ParsedImport] = []
        for clause in node.named_children:
            if clause.type != "import_clause":
                continue
            for item in clause.named_children:
                if item.type == "identifier":
                    found.append(ParsedImport(name=self.text(item), source=source,
                                              line_number=line, is_default=True))
                elif item.type == "namespace_import":
                    alias = next((self.text(c) for c in item.named_children if c.type == "identifier"), None)
                    found.append(ParsedImport(name="*", source=source, line_number=line,
                                              alias=alias, is_namespace=True))
                elif item.type == "named_imports":
                    for spec in item.named_children:
                        if spec.type != "import_specifier":
                            continue
                        alias = spec.child_by_field_name("alias")
                        found.append(ParsedImport(
                            name=self.field_text(spec, "name"),
                            source=source,
                            line_number=line,
                            alias=self.text(alias) if alias is not None else None,
                        ))
        return found

    def _is_require(self, node: Any) -> bool:
        if node.type != "call_expression":
            return False
        func = node.child_by_field_name("function")
        return func is not None and func.type == "identifier" and self.text(func) == "require"

    def _require(self, name_node: Any, call: Any) -> List[ParsedImport]:
        args = call.child_by_field_name("arguments")
        if args is None or not args.named_children or args.named_children[0].type != "string":
            return []
        source = self._strip_quotes(self.text(args.named_children[0]))
        line = self.line(call)
        if name_node.type == "identifier":
            return [ParsedImport(name=self.text(name_node), source=source,
                                 line_number=line, is_default=True)]
        found: List[ParsedImport] = []
        if name_node.type == "object_pattern":
            for prop in name_node.named_children:
                if prop.type == "shorthand_property_identifier_pattern":
                    found.append(ParsedImport(name=self.text(prop), source=source, line_number=line))
                elif prop.type == "pair_pattern":
                    found.append(ParsedImport(
                        name=self.field_text(prop, "key"),
                        source=source,
                        line_number=line,
                        alias=self.field_text(prop, "value") or None,
                    ))
        return found

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _call(self, node: Any) -> Optional[ParsedCall]:
        if node.type == "new_expression":
            target = node.child_by_field_name("constructor")
        else:
            target = node.child_by_field_name("function")
        if target is None:
            return None

        full_name: Optional[str] = None
        obj: Optional[str] = None
        if target.type == "identifier":
            name = self.text(target)
        elif target.type == "member_expression":
            name = self.field_text(target, "property")
            full_name = self.text(target)
            obj = self.field_text(target, "object") or None
        else:
            return None
        if not name or name == "require":
            return None

        args_node = node.child_by_field_name("arguments")
        args = []
        if args_node is not None:
            args = [self.text(a)[:MAX_ARG_CHARS] for a in args_node.named_children if a.type != "comment"]
        context, context_line = self.enclosing_function(node)
        return ParsedCall(
            name=name,
            line_number=self.line(node),
            args=args,
            full_name=full_name,
            inferred_obj_type=obj,
            context=context,
            context_line=context_line,
            class_context=self.enclosing_class(node),
        )

    # ------------------------------------------------------------------
    # Pre-scan
    # ------------------------------------------------------------------

    def pre_scan(self, files: Sequence[SourceFile]) -> ImportsMap:
        imports_map: ImportsMap = {}
        for item in files:
            try:
                root = self._parse_tree(item.source).root_node
            except (ValueError, UnicodeError) as exc:
                logger.warning("Pre-scan skipped %s: %s", item.path, exc)
                continue
            seen: Set[Tuple[str, int]] = set()
            for name, line in self._declared_names(root):
                if name and (name, line) not in seen:
                    seen.add((name, line))
                    add_location(imports_map, name, item.path, line)
        return imports_map

    def _declared_names(self, root: Any) -> List[Tuple[str, int]]:
        names: List[Tuple[str, int]] = []
        for node in self.walk(root):
            if node.type in ("function_declaration", "generator_function_declaration", "class_declaration"):
                names.append((self.field_text(node, "name"), self.line(node)))
            elif node.type == "variable_declarator" and node.parent is not None:
                value = node.child_by_field_name("value")
                top_level = node.parent.parent is not None and node.parent.parent.type in ("program", "export_statement")
                if top_level and value is not None and value.type in FUNCTION_VALUE_TYPES + CLASS_VALUE_TYPES:
                    names.append((self.field_text(node, "name"), self.line(node)))
            elif node.type == "export_specifier":
                alias = node.child_by_field_name("alias")
                exported = self.text(alias) if alias is not None else self.field_text(node, "name")
                names.append((exported, self.line(node)))
        return names
