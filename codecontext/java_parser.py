"""Heuristic, line-based parser for Java source files.

Comments, string literals and char literals are masked out first so that
brace counting only sees structural braces.  Declarations are then matched
line by line:

- ``import`` / ``import static`` / wildcard imports,
- ``class`` / ``interface`` / ``enum`` / ``record`` headers,
- methods and constructors declared directly in a type body.

The end of a declaration is the line holding its matching ``}`` (or the
``;`` of a body-less declaration).  Headers split across lines before the
opening parenthesis are not recognised.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from .models import FileRecord, ImportStatement, SymbolDefinition
from .parser import MAX_DOC_LINES, LanguageParser

logger = logging.getLogger(__name__)

_IMPORT_RE = re.compile(r"^import\s+(static\s+)?([\w.]+?)(\.\*)?\s*;")
_TYPE_RE = re.compile(
    r"^((?:(?:public|protected|private|abstract|static|final|sealed|non-sealed|strictfp)\s+)*)"
    r"(class|interface|enum|record|@interface)\s+([A-Za-z_]\w*)"
)
_METHOD_RE = re.compile(
    r"^((?:(?:public|protected|private|abstract|static|final|synchronized|native|default|strictfp)\s+)*)"
    r"(?:<[^>]+>\s+)?"
    r"(?:([\w.]+(?:<[^()]*>)?(?:\[\])*)\s+)?"
    r"([A-Za-z_]\w*)\s*\(([^)]*)(\))?"
)

# leading annotations such as ``@Override`` on the declaration line
_ANNOTATION_RE = re.compile(r"^(?:@[\w.]+(?:\([^)]*\))?\s+)+")

_CALL_RE = re.compile(r"\b([a-zA-Z_]\w*)\s*\(")
_ATTR_RE = re.compile(r"\b([a-zA-Z_]\w*)\.")
_NEW_RE = re.compile(r"\bnew\s+([A-Z]\w*)")

_JAVA_KEYWORDS = {
    "if", "for", "while", "switch", "catch", "return", "new", "super", "this",
    "synchronized", "throw", "throws", "else", "try", "do", "case", "assert",
    "instanceof",
}


@dataclass
class _OpenType:
    name: str
    end_line: int
    body_depth: int


def mask_source(content: str) -> str:
    """Blank out comments and literals, keeping every newline in place."""
    out: List[str] = []
    i, n = 0, len(content)
    while i < n:
        ch = content[i]
        two = content[i:i + 2]
        if two == "//":
            end = content.find("\n", i)
            end = n if end < 0 else end
            out.append(" " * (end - i))
            i = end
        elif two == "/*":
            end = content.find("*/", i + 2)
            end = n if end < 0 else end + 2
            out.append("".join(c if c == "\n" else " " for c in content[i:end]))
            i = end
        elif content[i:i + 3] == '"""':
            end = content.find('"""', i + 3)
            end = n if end < 0 else end + 3
            out.append("".join(c if c == "\n" else " " for c in content[i:end]))
            i = end
        elif ch in ("\"", "'"):
            j = i + 1
            while j < n and content[j] != ch and content[j] != "\n":
                escaped = content[j] == "\\" and j + 1 < n and content[j + 1] != "\n"
                j += 2 if escaped else 1
            if j < n and content[j] == ch:
                end = j + 1
                out.append(ch + " " * (end - i - 2) + ch)
            else:
                # unterminated literal stops at the end of the line
                end = min(j, n)
                out.append(ch + " " * (end - i - 1))
            i = end
        else:
            out.append(ch)
            i += 1
    return "".join(out)


class JavaParser(LanguageParser):
    """Line-based Java parser (imports, types, methods)."""

    extensions = (".java",)
    languages = ("java",)
    keywords = _JAVA_KEYWORDS

    def parse_file(self, path: str, content: str) -> FileRecord:
        record = self._new_record(path, content)
        lines = content.splitlines()
        try:
            masked = mask_source(content).splitlines()
            record.imports = self._parse_imports(masked, lines)
            record.definitions, final_depth = self._parse_definitions(masked, lines)
            if final_depth != 0:
                record.parse_errors.append(
                    f"Unbalanced braces (depth {final_depth} at end of file)"
                )
        except Exception as exc:
            logger.debug("Failed to parse %s: %s", path, exc)
            record.parse_errors.append(f"Parse failure: {exc}")
        record.exports = [d for d in record.definitions if d.is_exported]
        return record

    def extract_symbols_from_line(self, line: str) -> List[str]:
        return self._symbols_matching(line, (_CALL_RE, _ATTR_RE, _NEW_RE))

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _parse_imports(self, masked: List[str], lines: List[str]) -> List[ImportStatement]:
        imports: List[ImportStatement] = []
        for i, line in enumerate(masked):
            match = _IMPORT_RE.match(line.strip())
            if match is None:
                continue
            is_static, name, wildcard = match.groups()
            source = lines[i].strip()
            if wildcard:
                imports.append(ImportStatement(
                    source=source, from_module=name, kind="namespace",
                    symbols=["*"], line=i + 1, is_external=True,
                ))
                continue
            module, _, symbol = name.rpartition(".")
            imports.append(ImportStatement(
                source=source,
                # a static import names a member of the class it comes from
                from_module=module if is_static else name,
                kind="named",
                symbols=[symbol or name],
                line=i + 1,
                is_external=True,
            ))
        return imports

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _parse_definitions(self, masked: List[str], lines: List[str]):
        definitions: List[SymbolDefinition] = []
        open_types: List[_OpenType] = []
        depth = 0

        for i, line in enumerate(masked):
            line_no = i + 1
            stripped = line.strip()
            while open_types and open_types[-1].end_line < line_no:
                open_types.pop()
            enclosing = open_types[-1] if open_types else None

            if not stripped.startswith("@interface"):
                stripped = _ANNOTATION_RE.sub("", stripped)
            if stripped and (not stripped.startswith("@") or stripped.startswith("@interface")):
                type_match = _TYPE_RE.match(stripped)
                if type_match:
                    definitions.append(self._type_definition(type_match, masked, lines, i, depth, enclosing))
                    open_types.append(_OpenType(
                        name=type_match.group(3),
                        end_line=definitions[-1].end_line,
                        body_depth=depth + 1,
                    ))
                elif enclosing is not None and depth == enclosing.body_depth:
                    method = self._method_definition(stripped, masked, lines, i, enclosing)
                    if method is not None:
                        definitions.append(method)

            depth += line.count("{") - line.count("}")
        return definitions, depth

    def _type_definition(self, match, masked, lines, i, depth, enclosing) -> SymbolDefinition:
        modifiers, keyword, name = match.groups()
        if enclosing is None:
            scope, parent = "global", None
        elif depth == enclosing.body_depth:
            scope, parent = "class", enclosing.name
        else:
            scope, parent = "local", None
        exported = "public" in modifiers.split()
        return SymbolDefinition(
            name=name,
            kind="interface" if keyword == "interface" else "class",
            start_line=i + 1,
            end_line=self._block_end(masked, i),
            signature=lines[i].strip().rstrip("{").strip(),
            documentation=self._javadoc(lines, i),
            is_exported=exported,
            export_kind="named" if exported else None,
            scope=scope,
            parent=parent,
        )

    def _method_definition(self, stripped, masked, lines, i, enclosing) -> Optional[SymbolDefinition]:
        if " class " in f" {stripped}" or " interface " in f" {stripped}":
            return None
        match = _METHOD_RE.match(stripped)
        if match is None:
            return None
        modifiers, return_type, name, params, closed = match.groups()
        if name in _JAVA_KEYWORDS or (return_type or "").split("<")[0] in _JAVA_KEYWORDS:
            return None
        if return_type is None and name != enclosing.name:
            # a bare call at body depth is not a declaration; constructors are
            return None

        params = " ".join(params.split())
        if not closed:
            params = f"{params}, ..." if params else "..."
        signature = f"{return_type} {name}({params})" if return_type else f"{name}({params})"
        exported = "public" in modifiers.split()
        return SymbolDefinition(
            name=name,
            kind="method",
            start_line=i + 1,
            end_line=self._block_end(masked, i),
            signature=signature,
            documentation=self._javadoc(lines, i),
            is_exported=exported,
            export_kind="named" if exported else None,
            scope="class",
            parent=enclosing.name,
        )

    def _block_end(self, masked: List[str], start: int) -> int:
        depth = 0
        opened = False
        for j in range(start, len(masked)):
            for ch in masked[j]:
                if ch == "{":
                    depth += 1
                    opened = True
                elif ch == "}":
                    depth -= 1
                    if opened and depth == 0:
                        return j + 1
                elif ch == ";" and not opened:
                    return j + 1
        return len(masked)

    def _javadoc(self, lines: List[str], header: int) -> Optional[str]:
        comments: List[str] = []
        row = header - 1
        while row >= 0 and lines[row].strip().startswith("@"):
            row -= 1
        while row >= 0 and len(comments) < MAX_DOC_LINES:
            line = lines[row].strip()
            if not line.startswith(("*", "/*", "//")):
                break
            comments.insert(0, line)
            row -= 1
        return "\n".join(comments) if comments else None
