"""Core data models shared by the graph, resolution, and retrieval layers.

Records are plain dataclasses.  Those that are persisted in the JSON caches
carry ``to_dict`` / ``from_dict`` helpers; nested records are rebuilt
explicitly so a cache round trip yields equal objects.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Kind vocabularies (plain strings, as stored in the caches)
IMPORT_KINDS = ("default", "named", "namespace", "dynamic")
DEFINITION_KINDS = ("function", "class", "variable", "constant", "interface", "type", "method")
SCOPES = ("global", "class", "local")
REFERENCE_KINDS = ("local", "project", "external", "unknown")
UNIT_KINDS = ("function", "class", "interface", "type", "block")
CONFIDENCE_BANDS = ("high", "medium", "low")


# ===================================================================
# Structural graph
# ===================================================================

@dataclass
class ImportStatement:
    source: str
    from_module: str
    kind: str
    symbols: List[str]
    line: int
    is_external: bool
    alias: Optional[str] = None
    # local name -> imported name, for ``import {a as b}`` style imports
    aliases: Dict[str, str] = field(default_factory=dict)

    def local_names(self) -> List[str]:
        names = [n for n in self.symbols if n != "*"]
        names.extend(self.aliases.keys())
        if self.alias:
            names.append(self.alias)
        return names

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportStatement":
        return cls(
            source=data["source"],
            from_module=data["from_module"],
            kind=data["kind"],
            symbols=list(data.get("symbols", [])),
            line=int(data["line"]),
            is_external=bool(data["is_external"]),
            alias=data.get("alias"),
            aliases=dict(data.get("aliases", {})),
        )


@dataclass
class SymbolDefinition:
    name: str
    kind: str
    start_line: int
    end_line: int
    is_exported: bool = False
    scope: str = "global"
    signature: Optional[str] = None
    documentation: Optional[str] = None
    export_kind: Optional[str] = None
    parent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SymbolDefinition":
        return cls(**data)


@dataclass
class FileRecord:
    path: str
    language: str
    last_modified: float
    content_hash: str
    size: int
    exports: List[SymbolDefinition] = field(default_factory=list)
    imports: List[ImportStatement] = field(default_factory=list)
    definitions: List[SymbolDefinition] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)

    def find_definition(self, name: str) -> Optional[SymbolDefinition]:
        for definition in self.definitions:
            if definition.name == name:
                return definition
        return None

    def find_export(self, name: str) -> Optional[SymbolDefinition]:
        for definition in self.exports:
            if definition.name == name:
                return definition
        return None

    def default_export(self) -> Optional[SymbolDefinition]:
        for definition in self.exports:
            if definition.export_kind == "default":
                return definition
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "language": self.language,
            "last_modified": self.last_modified,
            "content_hash": self.content_hash,
            "size": self.size,
            "exports": [d.to_dict() for d in self.exports],
            "imports": [i.to_dict() for i in self.imports],
            "definitions": [d.to_dict() for d in self.definitions],
            "parse_errors": list(self.parse_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            language=data["language"],
            last_modified=float(data["last_modified"]),
            content_hash=data["content_hash"],
            size=int(data["size"]),
            exports=[SymbolDefinition.from_dict(d) for d in data.get("exports", [])],
            imports=[ImportStatement.from_dict(i) for i in data.get("imports", [])],
            definitions=[SymbolDefinition.from_dict(d) for d in data.get("definitions", [])],
            parse_errors=list(data.get("parse_errors", [])),
        )


@dataclass
class SymbolLocation:
    name: str
    defined_in: str
    kind: str
    start_line: int
    end_line: int
    definition: SymbolDefinition
    used_in: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "defined_in": self.defined_in,
            "kind": self.kind,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "definition": self.definition.to_dict(),
            "used_in": list(self.used_in),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SymbolLocation":
        return cls(
            name=data["name"],
            defined_in=data["defined_in"],
            kind=data["kind"],
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            definition=SymbolDefinition.from_dict(data["definition"]),
            used_in=list(data.get("used_in", [])),
        )


@dataclass
class GraphStats:
    total_files: int = 0
    total_symbols: int = 0
    total_imports: int = 0
    language_breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphStats":
        return cls(
            total_files=int(data.get("total_files", 0)),
            total_symbols=int(data.get("total_symbols", 0)),
            total_imports=int(data.get("total_imports", 0)),
            language_breakdown=dict(data.get("language_breakdown", {})),
        )


@dataclass
class DependencyGraph:
    project_root: str
    version: str
    last_updated: float
    files: Dict[str, FileRecord] = field(default_factory=dict)
    symbols: Dict[str, List[SymbolLocation]] = field(default_factory=dict)
    stats: GraphStats = field(default_factory=GraphStats)


@dataclass
class GraphBuildResult:
    graph: DependencyGraph
    duration_ms: int
    success: bool
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class GraphLoadResult:
    graph: DependencyGraph
    from_cache: bool
    duration_ms: int
    # files re-parsed (or parsed for the first time) by this load
    changed_files: List[str] = field(default_factory=list)


# ===================================================================
# Symbol resolution
# ===================================================================

@dataclass
class CodeBlock:
    content: str
    start_line: int
    end_line: int
    file_path: str
    language: str


@dataclass
class SymbolReference:
    name: str
    kind: str
    confidence: float
    definition_file: Optional[str] = None
    definition: Optional[CodeBlock] = None
    symbol_kind: Optional[str] = None


@dataclass
class LineContext:
    line_number: int
    symbols: List[SymbolReference] = field(default_factory=list)
    context_blocks: List[CodeBlock] = field(default_factory=list)
    total_tokens: int = 0


# ===================================================================
# Semantic layer
# ===================================================================

@dataclass
class UnitMetadata:
    tokens: int = 0
    content_hash: str = ""
    complexity: Optional[int] = None


@dataclass
class CodeUnit:
    id: str
    file: str
    language: str
    kind: str
    start_line: int
    end_line: int
    code: str = ""
    symbol: Optional[str] = None
    signature: Optional[str] = None
    documentation: Optional[str] = None
    imports: List[str] = field(default_factory=list)
    is_exported: bool = False
    metadata: UnitMetadata = field(default_factory=UnitMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeUnit":
        values = dict(data)
        values["metadata"] = UnitMetadata(**values.get("metadata", {}))
        values["imports"] = list(values.get("imports") or [])
        return cls(**values)


@dataclass
class EmbeddingResult:
    unit_id: str
    vector: List[float]
    model: str
    generated_at: float
    content_hash: str


@dataclass
class VectorMetadata:
    unit: CodeUnit
    file: str
    language: str
    kind: str

    @classmethod
    def for_unit(cls, unit: CodeUnit) -> "VectorMetadata":
        return cls(unit=unit, file=unit.file, language=unit.language, kind=unit.kind)


@dataclass
class SearchFilters:
    file: Optional[str] = None
    language: Optional[str] = None
    kinds: Optional[List[str]] = None
    exclude_files: Optional[List[str]] = None


@dataclass
class SearchResult:
    id: str
    similarity: float
    metadata: VectorMetadata


@dataclass
class IndexStats:
    total_units: int = 0
    total_embeddings: int = 0
    language_breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexStats":
        return cls(
            total_units=int(data.get("total_units", 0)),
            total_embeddings=int(data.get("total_embeddings", 0)),
            language_breakdown=dict(data.get("language_breakdown", {})),
        )


@dataclass
class SemanticIndex:
    project_root: str
    version: str
    model: str
    last_updated: float
    vector_store: Any
    units: Dict[str, CodeUnit] = field(default_factory=dict)
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    stats: IndexStats = field(default_factory=IndexStats)
    # content hash of every graph file the units were extracted from
    file_hashes: Dict[str, str] = field(default_factory=dict)


# ===================================================================
# Retrieval
# ===================================================================

@dataclass
class QueryContext:
    target_line: str
    language: str
    current_file: str
    symbols: List[str] = field(default_factory=list)
    surrounding_lines: List[str] = field(default_factory=list)


@dataclass
class RetrievalOptions:
    max_results: Optional[int] = None
    min_confidence: Optional[float] = None
    include_conditional: bool = True
    exclude_current_file: bool = False


@dataclass
class RankedResult:
    unit: CodeUnit
    score: float
    confidence_band: str
    match_reasons: List[str] = field(default_factory=list)
    auto_include: bool = False
    origin: str = "semantic"


@dataclass
class ContextBundle:
    """Everything known about one line: resolved symbols plus ranked context."""

    file: str
    line_number: int
    line: str
    line_context: LineContext
    semantic_results: List[RankedResult] = field(default_factory=list)
    combined: List[RankedResult] = field(default_factory=list)
