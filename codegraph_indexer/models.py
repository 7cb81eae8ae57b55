"""Entity model shared by parsers, the indexing pipeline and the graph store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


# ===================================================================
# Graph vocabulary
# ===================================================================

NODE_LABELS: FrozenSet[str] = frozenset({
    "Repository", "Directory", "File", "Module",
    "Function", "Class", "Variable", "Parameter",
})

RELATIONSHIP_TYPES: FrozenSet[str] = frozenset({
    "CONTAINS_DIR", "CONTAINS_FILE", "CONTAINS", "HAS_PARAMETER",
    "IMPORTS", "INHERITS", "IMPLEMENTS", "CALLS",
})

NODE_PROPERTIES: FrozenSet[str] = frozenset({
    "name", "path", "line_number", "end_line", "repo_path", "lang",
    "is_dependency", "source", "docstring", "args", "cyclomatic_complexity",
    "context", "class_context", "is_async", "kind", "decorators",
    "bases", "implements", "is_abstract", "is_interface",
    "value", "type", "function_name",
    "imported_name", "alias", "is_default", "is_namespace",
    "description", "content_hash",
})

# Labels whose nodes carry a description + embedding.
ENRICHABLE_LABELS: FrozenSet[str] = frozenset({
    "Function", "Class", "File", "Directory", "Repository",
})

# Labels whose nodes belong to exactly one file and die with it.
FILE_OWNED_LABELS = ("Function", "Class", "Variable", "Parameter")

# Labels included in the full-text symbol index.
SEARCHABLE_LABELS = ("Function", "Class", "Variable")


# ===================================================================
# Parser output
# ===================================================================

@dataclass(frozen=True)
class Location:
    file_path: str
    line_number: int


# Symbol name -> every place it is declared or exported.
ImportsMap = Dict[str, List[Location]]


@dataclass
class SourceFile:
    path: str
    source: str


@dataclass
class ParsedFunction:
    name: str
    line_number: int
    end_line: int
    args: List[str] = field(default_factory=list)
    source: Optional[str] = None
    docstring: Optional[str] = None
    cyclomatic_complexity: int = 1
    context: Optional[str] = None
    class_context: Optional[str] = None
    kind: Optional[str] = None
    is_async: bool = False
    decorators: List[str] = field(default_factory=list)


@dataclass
class ParsedClass:
    name: str
    line_number: int
    end_line: int
    bases: List[str] = field(default_factory=list)
    implements: List[str] = field(default_factory=list)
    is_abstract: bool = False
    is_interface: bool = False
    source: Optional[str] = None
    docstring: Optional[str] = None
    context: Optional[str] = None


@dataclass
class ParsedImport:
    name: str
    source: str
    line_number: int
    alias: Optional[str] = None
    is_default: bool = False
    is_namespace: bool = False


@dataclass
class ParsedCall:
    name: str
    line_number: int
    args: List[str] = field(default_factory=list)
    full_name: Optional[str] = None
    inferred_obj_type: Optional[str] = None
    context: Optional[str] = None
    context_line: Optional[int] = None
    class_context: Optional[str] = None


@dataclass
class ParsedVariable:
    name: str
    line_number: int
    value: Optional[str] = None
    type: Optional[str] = None
    context: Optional[str] = None
    class_context: Optional[str] = None


@dataclass
class ParsedFile:
    path: str
    lang: str
    repo_path: str = ""
    source: Optional[str] = None
    is_dependency: bool = False
    functions: List[ParsedFunction] = field(default_factory=list)
    classes: List[ParsedClass] = field(default_factory=list)
    imports: List[ParsedImport] = field(default_factory=list)
    calls: List[ParsedCall] = field(default_factory=list)
    variables: List[ParsedVariable] = field(default_factory=list)


# ===================================================================
# Jobs and query results
# ===================================================================

class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPhase(str, Enum):
    COLLECTING = "collecting"
    PRE_SCANNING = "pre-scanning"
    WRITING = "writing"
    LINKING = "linking"
    ENRICHING = "enriching"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IndexJob:
    id: str
    path: str
    status: JobStatus = JobStatus.RUNNING
    phase: JobPhase = JobPhase.COLLECTING
    files_total: int = 0
    files_processed: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status is not JobStatus.RUNNING

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "path": self.path,
            "status": self.status.value,
            "phase": self.phase.value,
            "files_total": self.files_total,
            "files_processed": self.files_processed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


@dataclass
class SymbolSummary:
    name: str
    kind: str
    path: str
    line_number: int
    description: str
    content_hash: str


@dataclass
class SearchHit:
    label: str
    name: str
    path: str
    line_number: Optional[int]
    score: float
    description: str = ""


@dataclass
class GraphStats:
    repositories: int = 0
    files: int = 0
    functions: int = 0
    classes: int = 0
    variables: int = 0
    modules: int = 0
    relationships: int = 0
    described: int = 0
