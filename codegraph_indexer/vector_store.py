"""Vector store backed by LanceDB: serverless, local-first vector database.

One table per enrichable label (``Function``, ``Class``, ``File``,
``Directory``, ``Repository``) so each kind of summary can be searched on its
own or together. Rows are addressed by the same ``(label, name, path)`` key as
the enrichment cache in the graph store.

Schema per row:

=========== ============ =====================================
Column      Type         Description
=========== ============ =====================================
id          utf8         ``label:path:name``
vector      float32[dim] Embedding of the description
label       utf8         Graph label of the described node
name        utf8         Symbol name (empty for files/directories)
path        utf8         Absolute file or directory path
description utf8         Generated natural-language summary
=========== ============ =====================================
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import lancedb  # type: ignore[import-untyped]

from .models import ENRICHABLE_LABELS

logger = logging.getLogger(__name__)

TABLE_PREFIX = "summaries_"


def row_id(label: str, name: str, path: str) -> str:
    return f"{label}:{path}:{name}"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorStore:
    """LanceDB tables holding description embeddings, one per label."""

    def __init__(self, lance_dir: Path) -> None:
        self._lance_dir = lance_dir
        self._lance_dir.mkdir(exist_ok=True, parents=True)
        self._db: Any = lancedb.connect(str(self._lance_dir))
        self._tables: Dict[str, Any] = {}

    def _table(self, label: str) -> Optional[Any]:
        if label in self._tables:
            return self._tables[label]
        try:
            table = self._db.open_table(TABLE_PREFIX + label.lower())
        except Exception:
            return None
        self._tables[label] = table
        return table

    def open(self) -> List[str]:
        """Open every existing table; returns the labels that have data."""
        return [label for label in sorted(ENRICHABLE_LABELS) if self._table(label) is not None]

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def upsert(
        self,
        label: str,
        name: str,
        path: str,
        vector: List[float],
        description: str,
    ) -> None:
        rid = row_id(label, name, path)
        row = {
            "id": rid,
            "vector": [float(v) for v in vector],
            "label": label,
            "name": name,
            "path": path,
            "description": description,
        }
        table = self._table(label)
        if table is None:
            # First insert: schema inferred from data
            self._tables[label] = self._db.create_table(
                TABLE_PREFIX + label.lower(), data=[row], mode="overwrite",
            )
            return
        table.delete(f"id = {_quote(rid)}")
        table.add([row])

    def delete_ids(self, label: str, ids: Iterable[str]) -> None:
        table = self._table(label)
        if table is None:
            return
        for rid in ids:
            table.delete(f"id = {_quote(rid)}")

    def delete_path(self, path: str, prefix: bool = False) -> None:
        """Remove rows for *path* (or, with ``prefix``, everything below it).

        Prefix matching compares path strings in Python; a ``LIKE`` pattern
        would treat ``_`` and ``%`` in directory names as wildcards.
        """
        base = path.rstrip("/") + "/"
        for label in ENRICHABLE_LABELS:
            table = self._table(label)
            if table is None:
                continue
            if not prefix:
                table.delete(f"path = {_quote(path)}")
                continue
            data = table.to_arrow()
            doomed = [
                rid
                for rid, row_path in zip(data.column("id").to_pylist(), data.column("path").to_pylist())
                if row_path == path or row_path.startswith(base)
            ]
            if doomed:
                table.delete("id IN (" + ", ".join(_quote(rid) for rid in doomed) + ")")

    def clear(self) -> None:
        for label in ENRICHABLE_LABELS:
            if self._table(label) is not None:
                self._db.drop_table(TABLE_PREFIX + label.lower())
        self._tables.clear()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_embedding: List[float],
        n_results: int = 10,
        labels: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Cosine similarity search across the requested label tables.

        Each hit carries ``label``, ``name``, ``path``, ``description`` and
        ``score`` (``1 - cosine distance``), best first.
        """
        hits: List[Dict[str, Any]] = []
        for label in sorted(labels or ENRICHABLE_LABELS):
            table = self._table(label)
            if table is None:
                continue
            try:
                rows = (
                    table
                    .search(query_embedding)
                    .distance_type("cosine")
                    .limit(n_results)
                    .to_list()
                )
            except (ValueError, RuntimeError) as exc:
                logger.warning("LanceDB search on %s failed: %s", label, exc)
                continue
            for row in rows:
                hits.append({
                    "label": row.get("label", label),
                    "name": row.get("name", ""),
                    "path": row.get("path", ""),
                    "description": row.get("description", ""),
                    "score": 1.0 - float(row.get("_distance", 1.0)),
                })
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:n_results]
