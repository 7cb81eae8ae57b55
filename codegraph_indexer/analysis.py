"""Read-side services over the code graph.

- :class:`CodeAnalysis` answers structural questions (callers, callees,
  hierarchies, dead code, complexity).
- :class:`RepositoryManager` lists, inspects and deletes indexed repositories.
- :class:`CodeSearch` does full-text search on symbol names and semantic
  search on generated descriptions.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from .embeddings import EmbeddingGenerator
from .errors import GraphStoreError
from .models import SEARCHABLE_LABELS, GraphStats, SearchHit
from .storage import GraphStore

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")
_WRITE_RE = re.compile(
    r"\b(insert|update|delete|drop|create|alter|replace|attach|detach|pragma|vacuum|reindex)\b",
    re.IGNORECASE,
)


class CodeAnalysis:
    """Structural queries: who calls what, class trees, unused and complex code."""

    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph

    async def find_callers(self, name: str, path: Optional[str] = None) -> List[Dict[str, Any]]:
        where = " AND callee.path = :path" if path else ""
        return await self.graph.run_query(
            f"""
            SELECT caller.name AS name, caller.path AS path, caller.line_number AS line_number,
                   json_extract(e.props, '$.line_number') AS call_line
            FROM edges e
            JOIN nodes caller ON caller.node_id = e.src
            JOIN nodes callee ON callee.node_id = e.dst
            WHERE e.rel_type = 'CALLS' AND callee.label = 'Function' AND callee.name = :name{where}
            ORDER BY caller.path, call_line
            """,
            {"name": name, "path": path},
        )

    async def find_callees(self, name: str, path: Optional[str] = None) -> List[Dict[str, Any]]:
        where = " AND caller.path = :path" if path else ""
        return await self.graph.run_query(
            f"""
            SELECT callee.name AS name, callee.path AS path, callee.line_number AS line_number,
                   json_extract(e.props, '$.line_number') AS call_line
            FROM edges e
            JOIN nodes caller ON caller.node_id = e.src
            JOIN nodes callee ON callee.node_id = e.dst
            WHERE e.rel_type = 'CALLS' AND caller.label = 'Function' AND caller.name = :name{where}
            ORDER BY call_line, callee.name
            """,
            {"name": name, "path": path},
        )

    async def class_hierarchy(self, name: str, depth: int = 5) -> Dict[str, List[Dict[str, Any]]]:
        """Ancestors and descendants of every class called *name*."""

        async def walk(forward: bool) -> List[Dict[str, Any]]:
            near, far = ("src", "dst") if forward else ("dst", "src")
            return await self.graph.run_query(
                f"""
                WITH RECURSIVE tree(node_id, depth) AS (
                    SELECT node_id, 0 FROM nodes WHERE label = 'Class' AND name = :name
                    UNION
                    SELECT e.{far}, t.depth + 1 FROM edges e JOIN tree t ON e.{near} = t.node_id
                    WHERE e.rel_type IN ('INHERITS', 'IMPLEMENTS') AND t.depth < :depth
                )
                SELECT n.name AS name, n.path AS path, n.line_number AS line_number, MIN(t.depth) AS depth
                FROM tree t JOIN nodes n ON n.node_id = t.node_id
                WHERE t.depth > 0
                GROUP BY n.node_id
                ORDER BY depth, n.name
                """,
                {"name": name, "depth": depth},
            )

        return {"parents": await walk(True), "children": await walk(False)}

    async def call_chain(self, name: str, depth: int = 3) -> List[Dict[str, Any]]:
        """Every outgoing call path from *name* up to *depth* hops (no cycles)."""
        return await self.graph.run_query(
            """
            WITH RECURSIVE chain(node_id, depth, trail) AS (
                SELECT node_id, 0, name FROM nodes WHERE label = 'Function' AND name = :name
                UNION
                SELECT e.dst, c.depth + 1, c.trail || ' -> ' || n.name
                FROM chain c
                JOIN edges e ON e.src = c.node_id AND e.rel_type = 'CALLS'
                JOIN nodes n ON n.node_id = e.dst
                WHERE c.depth < :depth
                  AND instr(' -> ' || c.trail || ' -> ', ' -> ' || n.name || ' -> ') = 0
            )
            SELECT DISTINCT trail, depth FROM chain WHERE depth > 0 ORDER BY depth, trail
            """,
            {"name": name, "depth": depth},
        )

    async def dead_code(self, repo_path: Optional[str] = None) -> List[Dict[str, Any]]:
        """Functions nothing calls (constructors and dependencies excluded)."""
        where = " AND f.repo_path = :repo" if repo_path else ""
        return await self.graph.run_query(
            f"""
            SELECT f.name AS name, f.path AS path, f.line_number AS line_number
            FROM nodes f
            WHERE f.label = 'Function'
              AND NOT EXISTS (SELECT 1 FROM edges e WHERE e.dst = f.node_id AND e.rel_type = 'CALLS')
              AND coalesce(json_extract(f.props, '$.kind'), '') != 'constructor'
              AND coalesce(json_extract(f.props, '$.is_dependency'), 0) = 0{where}
            ORDER BY f.path, f.line_number
            """,
            {"repo": os.path.abspath(repo_path) if repo_path else None},
        )

    async def find_importers(self, module: str) -> List[Dict[str, Any]]:
        return await self.graph.run_query(
            """
            SELECT f.path AS path,
                   json_extract(e.props, '$.imported_name') AS imported_name,
                   json_extract(e.props, '$.alias') AS alias,
                   json_extract(e.props, '$.line_number') AS line_number
            FROM edges e
            JOIN nodes f ON f.node_id = e.src
            JOIN nodes m ON m.node_id = e.dst
            WHERE e.rel_type = 'IMPORTS' AND m.label = 'Module' AND m.name = :module
            ORDER BY f.path, line_number
            """,
            {"module": module},
        )

    async def module_deps(self, file_path: str) -> List[Dict[str, Any]]:
        return await self.graph.run_query(
            """
            SELECT m.name AS module,
                   json_extract(e.props, '$.imported_name') AS imported_name,
                   json_extract(e.props, '$.line_number') AS line_number
            FROM edges e
            JOIN nodes f ON f.node_id = e.src
            JOIN nodes m ON m.node_id = e.dst
            WHERE e.rel_type = 'IMPORTS' AND f.label = 'File' AND f.path = :path
            ORDER BY line_number
            """,
            {"path": os.path.abspath(file_path)},
        )

    async def most_complex_functions(self, limit: int = 10, repo_path: Optional[str] = None) -> List[Dict[str, Any]]:
        where = " AND repo_path = :repo" if repo_path else ""
        return await self.graph.run_query(
            f"""
            SELECT name, path, line_number,
                   json_extract(props, '$.cyclomatic_complexity') AS complexity
            FROM nodes
            WHERE label = 'Function'{where}
            ORDER BY complexity DESC, path, line_number
            LIMIT :limit
            """,
            {"limit": limit, "repo": os.path.abspath(repo_path) if repo_path else None},
        )

    async def calculate_complexity(self, name: str, path: Optional[str] = None) -> List[Dict[str, Any]]:
        where = " AND path = :path" if path else ""
        return await self.graph.run_query(
            f"""
            SELECT name, path, line_number,
                   json_extract(props, '$.cyclomatic_complexity') AS complexity
            FROM nodes
            WHERE label = 'Function' AND name = :name{where}
            ORDER BY path, line_number
            """,
            {"name": name, "path": os.path.abspath(path) if path else None},
        )


class RepositoryManager:
    """Lists, inspects and removes indexed repositories."""

    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph

    async def list_repositories(self) -> List[Dict[str, Any]]:
        return await self.graph.run_query(
            """
            SELECT r.path AS path, r.name AS name,
                   coalesce(json_extract(r.props, '$.is_dependency'), 0) AS is_dependency,
                   (SELECT COUNT(*) FROM nodes f WHERE f.label = 'File' AND f.repo_path = r.path) AS files
            FROM nodes r
            WHERE r.label = 'Repository'
            ORDER BY r.path
            """
        )

    async def delete_repository(self, repo_path: str) -> None:
        root = os.path.abspath(repo_path)
        await self.graph.delete_repository_subtree(root)
        logger.info("Deleted repository %s", root)

    async def delete_all(self) -> None:
        await self.graph.delete_all()
        logger.info("Deleted every repository")

    async def get_stats(self) -> GraphStats:
        rows = await self.graph.run_query("SELECT label, COUNT(*) AS n FROM nodes GROUP BY label")
        counts = {row["label"]: row["n"] for row in rows}
        edges = await self.graph.run_query("SELECT COUNT(*) AS n FROM edges")
        described = await self.graph.run_query("SELECT COUNT(*) AS n FROM enrichment")
        return GraphStats(
            repositories=counts.get("Repository", 0),
            files=counts.get("File", 0),
            functions=counts.get("Function", 0),
            classes=counts.get("Class", 0),
            variables=counts.get("Variable", 0),
            modules=counts.get("Module", 0),
            relationships=edges[0]["n"],
            described=described[0]["n"],
        )


class CodeSearch:
    """Full-text search over symbol names and semantic search over descriptions."""

    def __init__(self, graph: GraphStore, embedder: Optional[EmbeddingGenerator] = None) -> None:
        self.graph = graph
        self.embedder = embedder

    async def fulltext_search(self, query: str, limit: int = 20) -> List[SearchHit]:
        tokens = _WORD_RE.findall(query)
        if not tokens:
            return []
        if getattr(self.graph, "fulltext", False):
            match = " ".join(f'"{token}"*' for token in tokens)
            try:
                rows = await self.graph.run_query(
                    """
                    SELECT n.label AS label, n.name AS name, n.path AS path,
                           n.line_number AS line_number, bm25(symbol_search) AS rank
                    FROM symbol_search
                    JOIN nodes n ON n.node_id = symbol_search.rowid
                    WHERE symbol_search MATCH :match
                    ORDER BY rank
                    LIMIT :limit
                    """,
                    {"match": match, "limit": limit},
                )
                return [
                    SearchHit(label=r["label"], name=r["name"], path=r["path"],
                              line_number=r["line_number"], score=-float(r["rank"]))
                    for r in rows
                ]
            except GraphStoreError as exc:
                logger.warning("Full-text search failed (%s); falling back to substring match.", exc)
        return await self._substring_search(tokens, limit)

    async def _substring_search(self, tokens: List[str], limit: int) -> List[SearchHit]:
        labels = ", ".join(f"'{label}'" for label in SEARCHABLE_LABELS)
        clauses = " AND ".join(f"name LIKE :t{i}" for i in range(len(tokens)))
        params: Dict[str, Any] = {f"t{i}": f"%{token}%" for i, token in enumerate(tokens)}
        params["limit"] = limit
        rows = await self.graph.run_query(
            f"""
            SELECT label, name, path, line_number FROM nodes
            WHERE label IN ({labels}) AND {clauses}
            ORDER BY length(name), path
            LIMIT :limit
            """,
            params,
        )
        return [
            SearchHit(label=r["label"], name=r["name"], path=r["path"],
                      line_number=r["line_number"], score=1.0)
            for r in rows
        ]

    async def semantic_search(
        self, query: str, limit: int = 10, labels: Optional[Iterable[str]] = None,
    ) -> List[SearchHit]:
        if self.embedder is None:
            raise GraphStoreError("Semantic search needs an embedding generator")
        embedding = await self.embedder.generate_embedding(query)
        return await self.graph.vector_search(embedding, limit=limit, labels=labels)

    async def read_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run an ad-hoc query after checking it cannot modify the graph."""
        stripped = query.strip().rstrip(";")
        if ";" in stripped or not re.match(r"(?is)^\s*(select|with)\b", stripped) or _WRITE_RE.search(stripped):
            raise GraphStoreError("Only single read-only SELECT queries are allowed")
        return await self.graph.run_query(stripped, params)
