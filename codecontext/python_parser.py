"""Heuristic, line-based parser for Python source files.

This is deliberately approximate: it reads headers line by line and uses an
indentation stack instead of a real grammar.  Known limits:

- Headers must start on one line (``def name(`` / ``class Name...:``).
- ``def`` / ``class`` written inside strings are ignored only for
  triple-quoted strings.
- Dynamic definitions (``setattr``, ``globals()[...]``) are invisible.
"""

from __future__ import annotations

import keyword
import logging
import re
from typing import List, Optional, Tuple

from .models import FileRecord, ImportStatement, SymbolDefinition
from .parser import LanguageParser

logger = logging.getLogger(__name__)

_FROM_RE = re.compile(r"^from\s+([\w.]+)\s+import\s+(.+)$")
_IMPORT_RE = re.compile(r"^import\s+(.+)$")
_DEF_RE = re.compile(r"^(?:async\s+)?def\s+([A-Za-z_]\w*)\s*\((.*)$")
_CLASS_RE = re.compile(r"^class\s+([A-Za-z_]\w*)\s*(\([^)]*\))?\s*:")
_CONST_RE = re.compile(r"^([A-Z_][A-Z0-9_]*)\s*(?::[^=]+)?=(?!=)")
_ALL_RE = re.compile(r"^__all__\s*(?::[^=]+)?=\s*[\[(]([^\])]*)[\])]", re.MULTILINE)
_ALL_NAME_RE = re.compile(r"['\"]([A-Za-z_]\w*)['\"]")
_TRIPLE_RE = re.compile(r'"""|\'\'\'')
_DOCSTRING_RE = re.compile(r'^[rRuUbB]?("""|\'\'\')')

_CALL_RE = re.compile(r"\b([a-zA-Z_]\w*)\s*\(")
_ATTR_RE = re.compile(r"\b([a-zA-Z_]\w*)\.")
_CTOR_RE = re.compile(r"\b([A-Z]\w*)\s*\(")

MAX_DOCSTRING_LINES = 10


def _indent(line: str) -> int:
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip())


def _inside_strings(lines: List[str]) -> List[bool]:
    """Flag lines that *start* inside a triple-quoted string."""
    flags: List[bool] = []
    delim: Optional[str] = None
    for line in lines:
        flags.append(delim is not None)
        pos = 0
        while True:
            if delim is None:
                match = _TRIPLE_RE.search(line, pos)
                if match is None:
                    break
                delim, pos = match.group(0), match.end()
            else:
                idx = line.find(delim, pos)
                if idx < 0:
                    break
                delim, pos = None, idx + 3
    return flags


class PythonParser(LanguageParser):
    """Line-based Python parser (imports, functions, classes, constants)."""

    extensions = (".py",)
    languages = ("python",)
    keywords = set(keyword.kwlist)

    def parse_file(self, path: str, content: str) -> FileRecord:
        record = self._new_record(path, content)
        lines = content.splitlines()
        try:
            inside = _inside_strings(lines)
            record.imports = self._parse_imports(lines, inside)
            record.definitions = self._parse_definitions(lines, inside)
            self._apply_dunder_all(content, record.definitions)
        except Exception as exc:
            logger.debug("Failed to parse %s: %s", path, exc)
            record.parse_errors.append(f"Parse failure: {exc}")
        record.exports = [d for d in record.definitions if d.is_exported]
        return record

    def extract_symbols_from_line(self, line: str) -> List[str]:
        return self._symbols_matching(line, (_CALL_RE, _ATTR_RE, _CTOR_RE))

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _parse_imports(self, lines: List[str], inside: List[bool]) -> List[ImportStatement]:
        imports: List[ImportStatement] = []
        i = 0
        while i < len(lines):
            stripped = lines[i].strip()
            line_no = i + 1
            if inside[i] or not stripped.startswith(("from", "import")):
                i += 1
                continue

            match = _FROM_RE.match(stripped)
            if match:
                module, names = match.group(1), match.group(2).split("#")[0].strip()
                statement = stripped
                if names.startswith("(") and ")" not in names:
                    # Parenthesized list continues on the following lines
                    while ")" not in names and i + 1 < len(lines):
                        i += 1
                        names += " " + lines[i].split("#")[0].strip()
                    statement = f"from {module} import {names}"
                names = names.strip().strip("()").strip()
                imports.append(self._from_import(statement, module, names, line_no))
                i += 1
                continue

            match = _IMPORT_RE.match(stripped)
            if match:
                for part in match.group(1).split("#")[0].split(","):
                    pieces = part.split()
                    if not pieces:
                        continue
                    module = pieces[0]
                    alias = pieces[2] if len(pieces) == 3 and pieces[1] == "as" else None
                    aliases = {}
                    if alias is None and "." in module:
                        # ``import a.b`` binds the top-level package name
                        aliases[module.split(".")[0]] = module
                    imports.append(ImportStatement(
                        source=stripped,
                        from_module=module,
                        kind="default",
                        symbols=[module],
                        alias=alias,
                        aliases=aliases,
                        line=line_no,
                        is_external=not module.startswith("."),
                    ))
            i += 1
        return imports

    def _from_import(self, statement: str, module: str, names: str, line_no: int) -> ImportStatement:
        is_external = not module.startswith(".")
        if names == "*":
            return ImportStatement(
                source=statement, from_module=module, kind="namespace",
                symbols=["*"], line=line_no, is_external=is_external,
            )
        symbols: List[str] = []
        aliases = {}
        for part in names.split(","):
            pieces = part.split()
            if not pieces:
                continue
            symbols.append(pieces[0])
            if len(pieces) == 3 and pieces[1] == "as":
                aliases[pieces[2]] = pieces[0]
        return ImportStatement(
            source=statement, from_module=module, kind="named",
            symbols=symbols, aliases=aliases, line=line_no, is_external=is_external,
        )

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _parse_definitions(self, lines: List[str], inside: List[bool]) -> List[SymbolDefinition]:
        definitions: List[SymbolDefinition] = []
        # (indent, "class" | "def", name) of the open blocks
        stack: List[Tuple[int, str, str]] = []

        for i, line in enumerate(lines):
            stripped = line.strip()
            if inside[i] or not stripped or stripped.startswith(("#", "@")):
                continue
            indent = _indent(line)
            while stack and stack[-1][0] >= indent:
                stack.pop()

            def_match = _DEF_RE.match(stripped)
            class_match = None if def_match else _CLASS_RE.match(stripped)
            if def_match is None and class_match is None:
                const_match = _CONST_RE.match(stripped) if indent == 0 else None
                if const_match:
                    name = const_match.group(1)
                    definitions.append(SymbolDefinition(
                        name=name,
                        kind="constant",
                        start_line=i + 1,
                        end_line=self._block_end(lines, inside, i, indent),
                        signature=name,
                        is_exported=not name.startswith("_"),
                        export_kind=None if name.startswith("_") else "named",
                    ))
                continue

            if not stack:
                scope, parent = "global", None
            elif stack[-1][1] == "class":
                scope, parent = "class", stack[-1][2]
            else:
                scope, parent = "local", None

            end_line = self._block_end(lines, inside, i, indent)
            if def_match:
                name = def_match.group(1)
                rest = def_match.group(2)
                close = rest.find(")")
                if close >= 0:
                    params = rest[:close]
                else:
                    head = rest.rstrip(" ,(\\")
                    params = f"{head}, ..." if head else "..."
                kind = "method" if scope == "class" else "function"
                signature = f"def {name}({params.strip()})"
                stack.append((indent, "def", name))
            else:
                name = class_match.group(1)
                kind = "class"
                signature = f"class {name}{class_match.group(2) or ''}"
                stack.append((indent, "class", name))

            exported = scope == "global" and not name.startswith("_")
            definitions.append(SymbolDefinition(
                name=name,
                kind=kind,
                start_line=self._decorator_start(lines, i, indent) + 1,
                end_line=end_line,
                signature=signature,
                documentation=self._docstring(lines, i, end_line),
                is_exported=exported,
                export_kind="named" if exported else None,
                scope=scope,
                parent=parent,
            ))
        return definitions

    def _block_end(self, lines: List[str], inside: List[bool], start: int, indent: int) -> int:
        """1-based last line of the block whose header is at *start*."""
        end = start
        for j in range(start + 1, len(lines)):
            if inside[j]:
                end = j
                continue
            stripped = lines[j].strip()
            if not stripped or stripped.startswith("#"):
                continue
            # closing brackets of a multi-line header or literal stay inside
            if _indent(lines[j]) <= indent and not stripped.startswith((")", "]", "}")):
                break
            end = j
        return end + 1

    def _decorator_start(self, lines: List[str], header: int, indent: int) -> int:
        start = header
        while start > 0:
            previous = lines[start - 1]
            if previous.strip().startswith("@") and _indent(previous) == indent:
                start -= 1
            else:
                break
        return start

    def _docstring(self, lines: List[str], header: int, end_line: int) -> Optional[str]:
        body = header
        while body < end_line - 1 and not lines[body].split("#")[0].rstrip().endswith(":"):
            body += 1

        for j in range(body + 1, end_line):
            stripped = lines[j].strip()
            if not stripped:
                continue
            match = _DOCSTRING_RE.match(stripped)
            if match is None:
                return None
            delim = match.group(1)
            text = stripped[match.end():]
            if delim in text:
                return text[:text.index(delim)].strip() or None
            parts = [text.strip()]
            for k in range(j + 1, min(end_line, j + MAX_DOCSTRING_LINES)):
                part = lines[k].strip()
                if delim in part:
                    parts.append(part[:part.index(delim)].strip())
                    break
                parts.append(part)
            return "\n".join(p for p in parts if p) or None
        return None

    def _apply_dunder_all(self, content: str, definitions: List[SymbolDefinition]) -> None:
        """When ``__all__`` is declared it replaces the underscore rule."""
        match = _ALL_RE.search(content)
        if match is None:
            return
        exported = set(_ALL_NAME_RE.findall(match.group(1)))
        for definition in definitions:
            if definition.scope != "global":
                continue
            definition.is_exported = definition.name in exported
            definition.export_kind = "named" if definition.is_exported else None
