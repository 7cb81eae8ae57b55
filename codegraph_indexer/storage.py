"""Graph store port and its SQLite implementation.

Architecture:
- **SQLite** (through ``aiosqlite``) holds nodes, edges and the enrichment
  cache; graph traversal is done with recursive CTEs.
- **LanceDB** (via :class:`~codegraph_indexer.vector_store.VectorStore`) holds
  description embeddings for semantic search.

Labels, relationship types and property names are interpolated into SQL only
after passing the allow-lists from :mod:`codegraph_indexer.models`; values are
always bound parameters.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

import aiosqlite

from .errors import GraphStoreError, UnsafeIdentifierError
from .models import (
    ENRICHABLE_LABELS,
    FILE_OWNED_LABELS,
    NODE_LABELS,
    NODE_PROPERTIES,
    RELATIONSHIP_TYPES,
    SEARCHABLE_LABELS,
    SearchHit,
)
from .vector_store import VectorStore, row_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNERSHIP_RELATIONSHIPS = ("CONTAINS_DIR", "CONTAINS_FILE", "CONTAINS", "HAS_PARAMETER")
NODE_COLUMNS = ("name", "path", "line_number", "repo_path")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_in_batch: ContextVar[bool] = ContextVar("graph_store_in_batch", default=False)


def check_label(label: str) -> str:
    if label not in NODE_LABELS:
        raise UnsafeIdentifierError(f"Unknown node label: {label!r}")
    return label


def check_relationship(rel_type: str) -> str:
    if rel_type not in RELATIONSHIP_TYPES:
        raise UnsafeIdentifierError(f"Unknown relationship type: {rel_type!r}")
    return rel_type


def check_properties(props: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    props = props or {}
    for key in props:
        if key not in NODE_PROPERTIES or not _IDENTIFIER_RE.match(key):
            raise UnsafeIdentifierError(f"Unknown property name: {key!r}")
    return props


def _canonical(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def enrichment_key(key: Dict[str, Any]) -> Tuple[str, str]:
    """``(name, path)`` of an enrichment target; files and directories have no name."""
    return str(key.get("name", "") or ""), str(key["path"])


# ===================================================================
# Port
# ===================================================================

class GraphStore(ABC):
    """Abstract property-graph backend used by the indexer and the query layer."""

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Idempotently create uniqueness constraints and search indexes."""

    @abstractmethod
    async def merge_node(self, label: str, key: Dict[str, Any], props: Optional[Dict[str, Any]] = None) -> int:
        """Create the node identified by ``(label, key)`` or update its properties."""

    @abstractmethod
    async def merge_relationship(
        self,
        from_label: str,
        from_key: Dict[str, Any],
        to_label: str,
        to_key: Dict[str, Any],
        rel_type: str,
        props: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Create ``rel_type`` edges between every pair of matching nodes.

        Keys may be partial; nothing is created when either side matches no
        node. Returns the number of new edges.
        """

    @abstractmethod
    async def delete_file_subtree(self, path: str) -> None:
        """Remove a File node, everything it owns, and every incident edge."""

    @abstractmethod
    async def delete_repository_subtree(self, repo_path: str) -> None:
        """Remove a Repository and everything reachable through ownership edges."""

    @abstractmethod
    async def delete_all(self) -> None:
        """Drop every node, edge and enrichment."""

    @abstractmethod
    async def run_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a backend-native read query."""

    @abstractmethod
    async def execute_batch(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run *work* atomically: all of its writes become visible together or not at all."""

    @abstractmethod
    async def vector_search(
        self, embedding: List[float], limit: int = 10, labels: Optional[Iterable[str]] = None,
    ) -> List[SearchHit]:
        """Nearest enriched nodes to *embedding*."""

    @abstractmethod
    async def get_content_hash(self, label: str, key: Dict[str, Any]) -> Optional[str]:
        """Hash recorded by the last successful enrichment of the node."""

    @abstractmethod
    async def set_enrichment(
        self,
        label: str,
        key: Dict[str, Any],
        embedding: List[float],
        description: str,
        content_hash: str,
    ) -> None:
        """Store description, embedding and hash for a node in one update."""

    @abstractmethod
    async def drop_enrichment(self, path: str, prefix: bool = False) -> None:
        """Forget cached enrichment for *path* (or everything below it)."""

    @abstractmethod
    async def prune_enrichment(self, path: str, keep: Set[Tuple[str, str]]) -> int:
        """Forget enrichment rows for *path* whose ``(label, name)`` is not in *keep*."""

    async def close(self) -> None:
        """Release backend resources."""


# ===================================================================
# SQLite implementation
# ===================================================================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    node_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    label       TEXT NOT NULL,
    node_key    TEXT NOT NULL,
    name        TEXT,
    path        TEXT,
    line_number INTEGER,
    repo_path   TEXT,
    props       TEXT NOT NULL DEFAULT '{}',
    UNIQUE (label, node_key)
);
CREATE INDEX IF NOT EXISTS idx_nodes_label_name ON nodes(label, name);
CREATE INDEX IF NOT EXISTS idx_nodes_path ON nodes(path);
CREATE INDEX IF NOT EXISTS idx_nodes_repo ON nodes(repo_path);

CREATE TABLE IF NOT EXISTS edges (
    edge_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    src      INTEGER NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
    dst      INTEGER NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
    rel_type TEXT NOT NULL,
    props    TEXT NOT NULL DEFAULT '{}',
    UNIQUE (src, dst, rel_type, props)
);
CREATE INDEX IF NOT EXISTS idx_edges_src ON edges(src, rel_type);
CREATE INDEX IF NOT EXISTS idx_edges_dst ON edges(dst, rel_type);

CREATE TABLE IF NOT EXISTS enrichment (
    label        TEXT NOT NULL,
    name         TEXT NOT NULL DEFAULT '',
    path         TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    description  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (label, name, path)
);
"""

_LABEL_LIST = ", ".join(f"'{label}'" for label in SEARCHABLE_LABELS)

_FULLTEXT_SCHEMA = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS symbol_search USING fts5(name);
CREATE TRIGGER IF NOT EXISTS symbol_search_insert AFTER INSERT ON nodes
WHEN new.label IN ({_LABEL_LIST})
BEGIN
    INSERT INTO symbol_search(rowid, name) VALUES (new.node_id, new.name);
END;
CREATE TRIGGER IF NOT EXISTS symbol_search_delete AFTER DELETE ON nodes
WHEN old.label IN ({_LABEL_LIST})
BEGIN
    DELETE FROM symbol_search WHERE rowid = old.node_id;
END;
"""


class SQLiteGraphStore(GraphStore):
    """Property graph persisted in a single SQLite file.

    A node is unique on ``(label, key)`` where the key is the canonical JSON
    of its identifying properties, so Function/Class/Variable nodes are
    unique on ``(name, path, line_number)``. All access is serialized through
    one :class:`asyncio.Lock`; :meth:`execute_batch` holds it for the whole
    transaction.
    """

    def __init__(self, db_path: Path, vector_store: Optional[VectorStore] = None) -> None:
        self.db_path = Path(db_path)
        self.vector_store = vector_store
        self.fulltext = False
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._schema_ready = False

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.execute("PRAGMA journal_mode = WAL")
            self._conn = conn
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        if _in_batch.get():
            yield await self._connection()
            return
        async with self._lock:
            conn = await self._connection()
            await conn.execute("BEGIN")
            token = _in_batch.set(True)
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
            finally:
                _in_batch.reset(token)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        async with self._lock:
            conn = await self._connection()
            try:
                await conn.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise GraphStoreError(f"Schema setup failed: {exc}") from exc
            try:
                await conn.executescript(_FULLTEXT_SCHEMA)
                self.fulltext = True
            except sqlite3.OperationalError as exc:
                logger.warning("Full-text index unavailable (%s); using substring search.", exc)
                self.fulltext = False
            self._schema_ready = True
        if self.vector_store is not None:
            await asyncio.to_thread(self.vector_store.open)

    # ------------------------------------------------------------------
    # Nodes and relationships
    # ------------------------------------------------------------------

    async def merge_node(self, label: str, key: Dict[str, Any], props: Optional[Dict[str, Any]] = None) -> int:
        check_label(label)
        check_properties(key)
        props = check_properties(props)
        async with self._transaction() as conn:
            return await self._merge_node(conn, label, key, props)

    async def _merge_node(
        self, conn: aiosqlite.Connection, label: str, key: Dict[str, Any], props: Dict[str, Any],
    ) -> int:
        node_key = _canonical(key)
        updates = {k: v for k, v in props.items() if v is not None}
        cursor = await conn.execute(
            "SELECT node_id, props FROM nodes WHERE label = ? AND node_key = ?", (label, node_key),
        )
        row = await cursor.fetchone()
        if row is not None:
            merged = {**json.loads(row["props"]), **updates, **key}
            await conn.execute(
                "UPDATE nodes SET props = ?, repo_path = ? WHERE node_id = ?",
                (_canonical(merged), merged.get("repo_path"), row["node_id"]),
            )
            return int(row["node_id"])

        merged = {**updates, **key}
        if label in ENRICHABLE_LABELS and "path" in merged:
            cached = await self._cached_enrichment(conn, label, merged)
            if cached is not None:
                merged.setdefault("description", cached[1])
                merged.setdefault("content_hash", cached[0])
        cursor = await conn.execute(
            "INSERT INTO nodes (label, node_key, name, path, line_number, repo_path, props)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                label, node_key, merged.get("name"), merged.get("path"),
                merged.get("line_number"), merged.get("repo_path"), _canonical(merged),
            ),
        )
        return int(cursor.lastrowid)

    async def _match(self, conn: aiosqlite.Connection, label: str, key: Dict[str, Any]) -> List[int]:
        clauses = ["label = ?"]
        params: List[Any] = [label]
        for prop, value in key.items():
            column = prop if prop in NODE_COLUMNS else f"json_extract(props, '$.{prop}')"
            clauses.append(f"{column} = ?")
            params.append(value)
        cursor = await conn.execute(
            f"SELECT node_id FROM nodes WHERE {' AND '.join(clauses)}", params,
        )
        return [int(row["node_id"]) for row in await cursor.fetchall()]

    async def merge_relationship(
        self,
        from_label: str,
        from_key: Dict[str, Any],
        to_label: str,
        to_key: Dict[str, Any],
        rel_type: str,
        props: Optional[Dict[str, Any]] = None,
    ) -> int:
        check_label(from_label)
        check_label(to_label)
        check_relationship(rel_type)
        check_properties(from_key)
        check_properties(to_key)
        edge_props = _canonical({k: v for k, v in check_properties(props).items() if v is not None})
        async with self._transaction() as conn:
            sources = await self._match(conn, from_label, from_key)
            if not sources:
                return 0
            targets = await self._match(conn, to_label, to_key)
            created = 0
            for src in sources:
                for dst in targets:
                    cursor = await conn.execute(
                        "INSERT OR IGNORE INTO edges (src, dst, rel_type, props) VALUES (?, ?, ?, ?)",
                        (src, dst, rel_type, edge_props),
                    )
                    created += cursor.rowcount
            return created

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_file_subtree(self, path: str) -> None:
        owned = ", ".join("?" for _ in FILE_OWNED_LABELS)
        async with self._transaction() as conn:
            await conn.execute(
                f"DELETE FROM nodes WHERE path = ? AND (label = 'File' OR label IN ({owned}))",
                (path, *FILE_OWNED_LABELS),
            )

    async def delete_repository_subtree(self, repo_path: str) -> None:
        rels = ", ".join(f"'{rel}'" for rel in OWNERSHIP_RELATIONSHIPS)
        async with self._transaction() as conn:
            await conn.execute(
                f"""
                WITH RECURSIVE owned(id) AS (
                    SELECT node_id FROM nodes WHERE label = 'Repository' AND path = :repo
                    UNION
                    SELECT e.dst FROM edges e JOIN owned o ON e.src = o.id
                    WHERE e.rel_type IN ({rels})
                )
                DELETE FROM nodes
                WHERE node_id IN (SELECT id FROM owned) OR repo_path = :repo
                """,
                {"repo": repo_path},
            )
            await conn.execute(
                "DELETE FROM nodes WHERE label = 'Module'"
                " AND node_id NOT IN (SELECT dst FROM edges)"
                " AND node_id NOT IN (SELECT src FROM edges)"
            )
            await self._drop_enrichment(conn, repo_path, prefix=True)

    async def delete_all(self) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM edges")
            await conn.execute("DELETE FROM nodes")
            await conn.execute("DELETE FROM enrichment")
        if self.vector_store is not None:
            await asyncio.to_thread(self.vector_store.clear)

    # ------------------------------------------------------------------
    # Queries and batches
    # ------------------------------------------------------------------

    async def run_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        async with self._transaction() as conn:
            try:
                cursor = await conn.execute(query, params or {})
            except sqlite3.Error as exc:
                raise GraphStoreError(f"Query failed: {exc}") from exc
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def execute_batch(self, work: Callable[[], Awaitable[T]]) -> T:
        async with self._transaction():
            return await work()

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def _cached_enrichment(
        self, conn: aiosqlite.Connection, label: str, key: Dict[str, Any],
    ) -> Optional[Tuple[str, str]]:
        name, path = enrichment_key(key)
        if label not in ("Function", "Class"):
            name = ""
        cursor = await conn.execute(
            "SELECT content_hash, description FROM enrichment WHERE label = ? AND name = ? AND path = ?",
            (label, name, path),
        )
        row = await cursor.fetchone()
        return (row["content_hash"], row["description"]) if row is not None else None

    async def get_content_hash(self, label: str, key: Dict[str, Any]) -> Optional[str]:
        check_label(label)
        async with self._transaction() as conn:
            cached = await self._cached_enrichment(conn, label, key)
        return cached[0] if cached is not None else None

    async def set_enrichment(
        self,
        label: str,
        key: Dict[str, Any],
        embedding: List[float],
        description: str,
        content_hash: str,
    ) -> None:
        check_label(label)
        name, path = enrichment_key(key)
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO enrichment (label, name, path, content_hash, description)"
                " VALUES (?, ?, ?, ?, ?)"
                " ON CONFLICT (label, name, path) DO UPDATE SET"
                " content_hash = excluded.content_hash, description = excluded.description",
                (label, name, path, content_hash, description),
            )
            match_key: Dict[str, Any] = {"path": path}
            if name:
                match_key["name"] = name
            for node_id in await self._match(conn, label, match_key):
                await conn.execute(
                    "UPDATE nodes SET props = json_set(props, '$.description', ?, '$.content_hash', ?)"
                    " WHERE node_id = ?",
                    (description, content_hash, node_id),
                )
            if self.vector_store is not None:
                await asyncio.to_thread(self.vector_store.upsert, label, name, path, embedding, description)

    async def _drop_enrichment(self, conn: aiosqlite.Connection, path: str, prefix: bool) -> None:
        if prefix:
            base = path.rstrip("/") + "/"
            await conn.execute(
                "DELETE FROM enrichment WHERE path = ? OR substr(path, 1, ?) = ?",
                (path, len(base), base),
            )
        else:
            await conn.execute("DELETE FROM enrichment WHERE path = ?", (path,))
        if self.vector_store is not None:
            await asyncio.to_thread(self.vector_store.delete_path, path, prefix)

    async def drop_enrichment(self, path: str, prefix: bool = False) -> None:
        async with self._transaction() as conn:
            await self._drop_enrichment(conn, path, prefix)

    async def prune_enrichment(self, path: str, keep: Set[Tuple[str, str]]) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT label, name FROM enrichment WHERE path = ?", (path,),
            )
            stale = [(row["label"], row["name"]) for row in await cursor.fetchall()
                     if (row["label"], row["name"]) not in keep]
            for label, name in stale:
                await conn.execute(
                    "DELETE FROM enrichment WHERE label = ? AND name = ? AND path = ?",
                    (label, name, path),
                )
                if self.vector_store is not None:
                    await asyncio.to_thread(self.vector_store.delete_ids, label, [row_id(label, name, path)])
        return len(stale)

    async def vector_search(
        self, embedding: List[float], limit: int = 10, labels: Optional[Iterable[str]] = None,
    ) -> List[SearchHit]:
        if self.vector_store is None:
            return []
        wanted = [check_label(label) for label in labels] if labels else None
        hits: List[SearchHit] = []
        async with self._transaction() as conn:
            found = await asyncio.to_thread(self.vector_store.search, embedding, limit, wanted)
            for hit in found:
                query = "SELECT line_number FROM nodes WHERE label = ? AND path = ?"
                params: List[Any] = [hit["label"], hit["path"]]
                if hit["name"]:
                    query += " AND name = ?"
                    params.append(hit["name"])
                cursor = await conn.execute(query + " ORDER BY line_number LIMIT 1", params)
                row = await cursor.fetchone()
                if row is None:
                    continue
                hits.append(SearchHit(
                    label=hit["label"],
                    name=hit["name"] or Path(hit["path"]).name,
                    path=hit["path"],
                    line_number=row["line_number"],
                    score=hit["score"],
                    description=hit["description"],
                ))
        return hits
