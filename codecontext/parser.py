"""Language parsers that turn one source file into a :class:`FileRecord`.

Two families live behind the same :class:`LanguageParser` contract:

- **Precise** parsing for TypeScript / JavaScript, built on Tree-sitter.
  The concrete syntax tree is error tolerant, so a file with a syntax error
  still yields the declarations that could be recovered; the error itself is
  reported in ``FileRecord.parse_errors``.
- **Heuristic** line-based parsers for Python and Java (see
  :mod:`codecontext.python_parser` and :mod:`codecontext.java_parser`).
  They are approximate by design and document their limits.

``parse_file`` never raises.  Parsers are looked up through an explicitly
constructed :class:`ParserRegistry` that callers pass around.
"""

from __future__ import annotations

import hashlib
import importlib
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from tree_sitter import Language, Parser as TSParser

from .models import FileRecord, ImportStatement, SymbolDefinition

logger = logging.getLogger(__name__)

# Maximum number of comment lines harvested above a declaration
MAX_DOC_LINES = 5


def content_hash(content: str) -> str:
    """Return the md5 hex digest used for change detection."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def unique(names: Iterable[str]) -> List[str]:
    """De-duplicate *names* keeping first-seen order."""
    seen: Set[str] = set()
    result: List[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


# ===================================================================
# Abstract Parser Interface
# ===================================================================

class LanguageParser(ABC):
    """Abstract base class for all language parsers."""

    #: File extensions handled by this parser (lower case, with dot)
    extensions: Tuple[str, ...] = ()
    #: Language names this parser answers to in the registry
    languages: Tuple[str, ...] = ()
    #: Identifiers that look like calls but are language keywords
    keywords: Set[str] = set()

    @abstractmethod
    def parse_file(self, path: str, content: str) -> FileRecord:
        """Parse *content* (the text of *path*) into a file record."""
        ...

    @abstractmethod
    def extract_symbols_from_line(self, line: str) -> List[str]:
        """Return candidate symbol names referenced on a single line."""
        ...

    def language_for(self, path: str) -> str:
        return self.languages[0]

    def _new_record(self, path: str, content: str) -> FileRecord:
        try:
            stat = os.stat(path)
            last_modified, size = stat.st_mtime, stat.st_size
        except OSError:
            last_modified, size = 0.0, len(content.encode("utf-8"))
        return FileRecord(
            path=path,
            language=self.language_for(path),
            last_modified=last_modified,
            content_hash=content_hash(content),
            size=size,
        )

    def _symbols_matching(self, line: str, patterns: Iterable[re.Pattern]) -> List[str]:
        names: List[str] = []
        for pattern in patterns:
            names.extend(pattern.findall(line))
        return unique(n for n in names if n not in self.keywords)


# ===================================================================
# Parser registry
# ===================================================================

class ParserRegistry:
    """Maps file extensions and language names to parser instances."""

    def __init__(self, parsers: Optional[Iterable[LanguageParser]] = None) -> None:
        self._parsers: List[LanguageParser] = []
        self._by_extension: Dict[str, LanguageParser] = {}
        self._by_language: Dict[str, LanguageParser] = {}
        for parser in parsers or []:
            self.register(parser)

    def register(self, parser: LanguageParser) -> None:
        self._parsers.append(parser)
        for ext in parser.extensions:
            self._by_extension[ext.lower()] = parser
        for language in parser.languages:
            self._by_language[language] = parser

    def get_for_path(self, path: str) -> Optional[LanguageParser]:
        return self._by_extension.get(Path(path).suffix.lower())

    def get_by_language(self, language: str) -> Optional[LanguageParser]:
        return self._by_language.get(language)

    def is_supported(self, path: str) -> bool:
        return self.get_for_path(path) is not None

    @property
    def supported_extensions(self) -> List[str]:
        return sorted(self._by_extension)

    @property
    def languages(self) -> List[str]:
        return sorted(self._by_language)


def default_registry() -> ParserRegistry:
    """Build a registry with the TypeScript/JavaScript, Python and Java parsers."""
    from .java_parser import JavaParser
    from .python_parser import PythonParser

    return ParserRegistry([TypeScriptParser(), PythonParser(), JavaParser()])


# ===================================================================
# Tree-sitter TypeScript / JavaScript parser (precise)
# ===================================================================

_TS_CALL_RE = re.compile(r"\b([a-zA-Z_$][\w$]*)\s*\(")
_TS_MEMBER_RE = re.compile(r"\b([a-zA-Z_$][\w$]*)\.")
_TS_NEW_RE = re.compile(r"\bnew\s+([a-zA-Z_$][\w$]*)")

_TS_KEYWORDS: Set[str] = {
    "if", "for", "while", "switch", "catch", "return", "function", "typeof",
    "new", "super", "this", "await", "async", "yield", "import", "export",
    "delete", "void", "in", "of", "instanceof", "else", "do", "case",
}

_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}

# Declarations inside these nodes are block scoped
_BLOCK_SCOPES = {
    "statement_block", "if_statement", "else_clause", "for_statement", "for_in_statement",
    "while_statement", "do_statement", "try_statement", "catch_clause", "finally_clause",
    "switch_statement", "switch_body", "switch_case", "switch_default", "labeled_statement",
}


class TypeScriptParser(LanguageParser):
    """Error-tolerant TS/JS parser built on Tree-sitter grammars.

    ``.ts`` uses the TypeScript grammar, ``.tsx`` the TSX grammar and the
    JavaScript family (``.js .jsx .mjs .cjs``) the JavaScript grammar.
    Grammars are loaded lazily; a missing grammar package is reported as a
    parse error on the affected files.
    """

    extensions = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
    languages = ("typescript", "javascript")
    keywords = _TS_KEYWORDS

    # Map extension -> (grammar module, function returning the Language capsule)
    _GRAMMAR_MODULES: Dict[str, Tuple[str, str]] = {
        ".ts": ("tree_sitter_typescript", "language_typescript"),
        ".tsx": ("tree_sitter_typescript", "language_tsx"),
        ".js": ("tree_sitter_javascript", "language"),
        ".jsx": ("tree_sitter_javascript", "language"),
        ".mjs": ("tree_sitter_javascript", "language"),
        ".cjs": ("tree_sitter_javascript", "language"),
    }

    def __init__(self) -> None:
        self._parsers: Dict[Tuple[str, str], Optional[TSParser]] = {}

    def language_for(self, path: str) -> str:
        return "typescript" if Path(path).suffix.lower() in (".ts", ".tsx") else "javascript"

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def _parser_for(self, ext: str) -> Optional[TSParser]:
        grammar = self._GRAMMAR_MODULES.get(ext)
        if grammar is None:
            return None
        if grammar not in self._parsers:
            mod_name, func_name = grammar
            parser: Optional[TSParser] = None
            try:
                mod = importlib.import_module(mod_name)
                # tree-sitter >=0.22 per-language packages expose functions
                # returning the Language capsule.
                parser = TSParser(Language(getattr(mod, func_name)()))
                logger.debug("Loaded tree-sitter grammar %s.%s", mod_name, func_name)
            except ImportError:
                logger.warning(
                    "Grammar package '%s' not installed. Install with: pip install %s",
                    mod_name, mod_name.replace("_", "-"),
                )
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("Could not load tree-sitter grammar %s: %s", mod_name, exc)
            self._parsers[grammar] = parser
        return self._parsers[grammar]

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def parse_file(self, path: str, content: str) -> FileRecord:
        record = self._new_record(path, content)
        ext = Path(path).suffix.lower()
        parser = self._parser_for(ext)
        if parser is None:
            record.parse_errors.append(f"No tree-sitter grammar available for '{ext}' files")
            return record

        try:
            tree = parser.parse(content.encode("utf-8"))
            walker = _DeclarationWalker(content)
            walker.walk(tree.root_node)
            record.imports = walker.imports
            record.definitions = walker.definitions
            if tree.root_node.has_error:
                record.parse_errors.append(
                    f"Syntax error near line {_first_error_line(tree.root_node)}"
                )
        except Exception as exc:
            logger.debug("Failed to parse %s: %s", path, exc)
            record.parse_errors.append(f"Parse failure: {exc}")

        record.exports = [d for d in record.definitions if d.is_exported]
        return record

    def extract_symbols_from_line(self, line: str) -> List[str]:
        return self._symbols_matching(line, (_TS_CALL_RE, _TS_MEMBER_RE, _TS_NEW_RE))


def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace")


def _string_value(node: Any) -> str:
    """Unquote a string literal node."""
    for child in node.named_children:
        if child.type == "string_fragment":
            return _text(child)
    raw = _text(node)
    return raw[1:-1] if len(raw) >= 2 else raw


def _first_error_line(root: Any) -> int:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return node.start_point[0] + 1
        if node.has_error:
            stack.extend(reversed(node.children))
    return root.start_point[0] + 1


class _DeclarationWalker:
    """Collects imports and declarations from one Tree-sitter syntax tree."""

    def __init__(self, content: str) -> None:
        self.lines = content.splitlines()
        self.imports: List[ImportStatement] = []
        self.definitions: List[SymbolDefinition] = []
        # Names exported by ``export { a }`` / ``export default a;``
        self._export_names: Dict[str, str] = {}
        # ``export { local as exported }`` pairs
        self._export_aliases: List[Tuple[str, str]] = []

    def walk(self, root: Any) -> None:
        for child in root.named_children:
            self._visit(child, "global")
        self._collect_imports(root)
        for definition in self.definitions:
            export_kind = self._export_names.get(definition.name)
            if export_kind and definition.scope == "global" and not definition.is_exported:
                definition.is_exported = True
                definition.export_kind = export_kind
        for local, exported in self._export_aliases:
            target = next(
                (d for d in self.definitions if d.name == local and d.scope == "global"), None,
            )
            if target is not None:
                self.definitions.append(
                    replace(target, name=exported, is_exported=True, export_kind="named")
                )

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _visit(
        self,
        node: Any,
        scope: str,
        exported: bool = False,
        export_kind: Optional[str] = None,
        outer: Any = None,
    ) -> None:
        outer = outer or node
        kind = node.type

        if kind == "export_statement":
            self._visit_export(node, scope)
        elif kind in ("function_declaration", "generator_function_declaration"):
            self._add_function(node, scope, exported, export_kind, outer)
        elif kind in ("class_declaration", "abstract_class_declaration"):
            self._add_class(node, scope, exported, export_kind, outer)
        elif kind in ("lexical_declaration", "variable_declaration"):
            self._add_variables(node, scope, exported, export_kind, outer)
        elif kind == "interface_declaration":
            self._add_named(node, "interface", "interface", scope, exported, export_kind, outer)
        elif kind == "type_alias_declaration":
            self._add_named(node, "type", "type", scope, exported, export_kind, outer)
        elif kind == "enum_declaration":
            self._add_named(node, "type", "enum", scope, exported, export_kind, outer)
        elif kind != "comment":
            local = kind in _FUNCTION_VALUES or kind in _BLOCK_SCOPES or kind == "method_definition"
            nested_scope = "local" if local else scope
            for child in node.named_children:
                self._visit(child, nested_scope)

    def _visit_export(self, node: Any, scope: str) -> None:
        is_default = any(child.type == "default" for child in node.children)
        export_kind = "default" if is_default else "named"
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            self._visit(declaration, scope, True, export_kind, outer=node)
            return

        value = node.child_by_field_name("value")
        if is_default and value is not None:
            if value.type == "identifier":
                self._export_names[_text(value)] = "default"
            elif value.type in ("class", "function_expression", "function"):
                # export default class Foo {} / export default function foo() {}
                name_node = value.child_by_field_name("name")
                if name_node is not None and value.type == "class":
                    self._add_class(value, scope, True, "default", node)
                elif name_node is not None:
                    self._add_function(value, scope, True, "default", node)
            return

        for child in node.named_children:
            if child.type != "export_clause":
                continue
            for specifier in child.named_children:
                name_node = specifier.child_by_field_name("name")
                if specifier.type != "export_specifier" or name_node is None:
                    continue
                alias_node = specifier.child_by_field_name("alias")
                alias = _text(alias_node) if alias_node is not None else None
                local = _text(name_node)
                if alias == "default":
                    self._export_names[local] = "default"
                elif alias and alias != local:
                    self._export_aliases.append((local, alias))
                else:
                    self._export_names[local] = "named"

    def _add_function(self, node, scope, exported, export_kind, outer) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        params = self._format_params(node.child_by_field_name("parameters"))
        self._add(
            outer,
            SymbolDefinition(
                name=name,
                kind="function",
                start_line=outer.start_point[0] + 1,
                end_line=outer.end_point[0] + 1,
                signature=f"function {name}({params})",
                is_exported=exported,
                export_kind=export_kind,
                scope=scope,
            ),
        )
        self._visit_body(node, "local")

    def _add_class(self, node, scope, exported, export_kind, outer) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        signature = f"class {name}"
        heritage = next((c for c in node.children if c.type == "class_heritage"), None)
        if heritage is not None:
            signature += " " + " ".join(_text(heritage).split())
        self._add(
            outer,
            SymbolDefinition(
                name=name,
                kind="class",
                start_line=outer.start_point[0] + 1,
                end_line=outer.end_point[0] + 1,
                signature=signature,
                is_exported=exported,
                export_kind=export_kind,
                scope=scope,
            ),
        )

        body = node.child_by_field_name("body")
        if body is None:
            return
        for member in body.named_children:
            if member.type not in ("method_definition", "method_signature", "abstract_method_signature"):
                continue
            member_name = member.child_by_field_name("name")
            if member_name is None:
                continue
            method = _text(member_name)
            params = self._format_params(member.child_by_field_name("parameters"))
            self._add(
                member,
                SymbolDefinition(
                    name=method,
                    kind="method",
                    start_line=member.start_point[0] + 1,
                    end_line=member.end_point[0] + 1,
                    signature=f"{method}({params})",
                    is_exported=False,
                    scope="class",
                    parent=name,
                ),
            )
            self._visit_body(member, "local")

    def _add_variables(self, node, scope, exported, export_kind, outer) -> None:
        declarators = [c for c in node.named_children if c.type == "variable_declarator"]
        kind_node = node.child_by_field_name("kind")
        keyword = _text(kind_node) if kind_node is not None else node.children[0].type

        for decl in declarators:
            name_node = decl.child_by_field_name("name")
            value = decl.child_by_field_name("value")
            is_function = value is not None and value.type in _FUNCTION_VALUES
            if value is not None:
                self._visit_body(value, "local")
            # Local variables are skipped, local function values are kept
            if name_node is None or name_node.type != "identifier":
                continue
            if scope != "global" and not is_function:
                continue

            name = _text(name_node)
            span = outer if len(declarators) == 1 else decl
            if is_function:
                params_node = value.child_by_field_name("parameters") or value.child_by_field_name("parameter")
                params = self._format_params(params_node)
                if value.type == "arrow_function":
                    signature = f"{keyword} {name} = ({params}) => {{...}}"
                else:
                    signature = f"{keyword} {name} = function({params})"
                def_kind = "function"
            else:
                signature = f"{keyword} {name}"
                def_kind = "constant" if keyword == "const" else "variable"

            self._add(
                span,
                SymbolDefinition(
                    name=name,
                    kind=def_kind,
                    start_line=span.start_point[0] + 1,
                    end_line=span.end_point[0] + 1,
                    signature=signature,
                    is_exported=exported,
                    export_kind=export_kind,
                    scope=scope,
                ),
            )

    def _add_named(self, node, def_kind, keyword, scope, exported, export_kind, outer) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        self._add(
            outer,
            SymbolDefinition(
                name=name,
                kind=def_kind,
                start_line=outer.start_point[0] + 1,
                end_line=outer.end_point[0] + 1,
                signature=f"{keyword} {name}",
                is_exported=exported,
                export_kind=export_kind,
                scope=scope,
            ),
        )

    def _add(self, outer: Any, definition: SymbolDefinition) -> None:
        if not definition.is_exported:
            definition.export_kind = None
        definition.documentation = self._leading_comments(outer.start_point[0])
        self.definitions.append(definition)

    def _visit_body(self, node: Any, scope: str) -> None:
        body = node.child_by_field_name("body")
        if body is None:
            return
        for child in body.named_children:
            self._visit(child, scope)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _leading_comments(self, start_row: int) -> Optional[str]:
        """Collect up to MAX_DOC_LINES comment lines directly above *start_row*."""
        comments: List[str] = []
        row = start_row - 1
        while row >= 0 and len(comments) < MAX_DOC_LINES:
            line = self.lines[row].strip() if row < len(self.lines) else ""
            if not line.startswith(("*", "//", "/*")):
                break
            comments.insert(0, line)
            row -= 1
        return "\n".join(comments) if comments else None

    def _format_params(self, params: Any) -> str:
        if params is None:
            return ""
        if params.type == "identifier":
            return _text(params)
        parts: List[str] = []
        for param in params.named_children:
            if param.type == "comment":
                continue
            if param.type in ("required_parameter", "optional_parameter"):
                name = self._param_name(param.child_by_field_name("pattern"))
                if param.child_by_field_name("type") is not None and not name.startswith("..."):
                    name += ": ..."
                parts.append(name)
            else:
                parts.append(self._param_name(param))
        return ", ".join(parts)

    def _param_name(self, node: Any) -> str:
        if node is None:
            return "..."
        if node.type in ("identifier", "this"):
            return _text(node)
        if node.type == "rest_pattern":
            inner = node.named_children[0] if node.named_children else None
            return "..." + (_text(inner) if inner is not None and inner.type == "identifier" else "")
        if node.type == "assignment_pattern":
            return self._param_name(node.child_by_field_name("left"))
        return "..."

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _collect_imports(self, root: Any) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == "import_statement":
                self._add_import_statement(node)
                continue
            if node.type == "call_expression":
                self._add_call_import(node)
            stack.extend(reversed(node.children))

    def _add_import_statement(self, node: Any) -> None:
        source_node = node.child_by_field_name("source")
        if source_node is None:
            return
        module = _string_value(source_node)
        line = node.start_point[0] + 1
        statement = " ".join(_text(node).split())
        is_external = not module.startswith((".", "/"))

        clause = next((c for c in node.named_children if c.type == "import_clause"), None)
        if clause is None:
            return
        for part in clause.named_children:
            if part.type == "identifier":
                self.imports.append(ImportStatement(
                    source=statement, from_module=module, kind="default",
                    symbols=[_text(part)], line=line, is_external=is_external,
                ))
            elif part.type == "namespace_import":
                ident = next((c for c in part.named_children if c.type == "identifier"), None)
                if ident is None:
                    continue
                local = _text(ident)
                self.imports.append(ImportStatement(
                    source=statement, from_module=module, kind="namespace",
                    symbols=[local], alias=local, line=line, is_external=is_external,
                ))
            elif part.type == "named_imports":
                symbols: List[str] = []
                aliases: Dict[str, str] = {}
                for specifier in part.named_children:
                    name_node = specifier.child_by_field_name("name")
                    if specifier.type != "import_specifier" or name_node is None:
                        continue
                    imported = _string_value(name_node) if name_node.type == "string" else _text(name_node)
                    symbols.append(imported)
                    alias_node = specifier.child_by_field_name("alias")
                    if alias_node is not None:
                        aliases[_text(alias_node)] = imported
                if symbols:
                    self.imports.append(ImportStatement(
                        source=statement, from_module=module, kind="named",
                        symbols=symbols, aliases=aliases, line=line, is_external=is_external,
                    ))

    def _add_call_import(self, node: Any) -> None:
        func = node.child_by_field_name("function")
        args = node.child_by_field_name("arguments")
        if func is None or args is None:
            return
        first = next((a for a in args.named_children if a.type != "comment"), None)
        if first is None or first.type != "string":
            return

        if func.type == "import":
            kind = "dynamic"
        elif func.type == "identifier" and _text(func) == "require":
            kind = "default"
        else:
            return

        module = _string_value(first)
        symbols: List[str] = []
        parent = node.parent
        if kind == "default" and parent is not None and parent.type == "variable_declarator":
            name_node = parent.child_by_field_name("name")
            if name_node is not None and name_node.type == "identifier":
                symbols.append(_text(name_node))
        self.imports.append(ImportStatement(
            source=" ".join(_text(node).split()),
            from_module=module,
            kind=kind,
            symbols=symbols,
            line=node.start_point[0] + 1,
            is_external=not module.startswith((".", "/")),
        ))
