"""Tests for the read-side services over an indexed sample project."""

import os
from pathlib import Path

import pytest
import pytest_asyncio

from codegraph_indexer.analysis import CodeAnalysis, CodeSearch, RepositoryManager
from codegraph_indexer.embeddings import HashEmbeddingModel
from codegraph_indexer.errors import GraphStoreError


@pytest_asyncio.fixture
async def indexed(make_pipeline, graph_store, project_dir: Path):
    job = await make_pipeline().run(str(project_dir))
    assert job.error is None
    return graph_store


class TestCodeAnalysis:
    """Tests for CodeAnalysis."""

    @pytest.mark.asyncio
    async def test_callers_and_callees(self, indexed):
        """Test both directions of the CALLS relationship."""
        analysis = CodeAnalysis(indexed)
        callers = await analysis.find_callers("add")
        assert [c["name"] for c in callers] == ["perimeter"]
        callees = await analysis.find_callees("main")
        assert [c["name"] for c in callees] == ["report"]
        assert await analysis.find_callers("nobody") == []

    @pytest.mark.asyncio
    async def test_class_hierarchy(self, indexed):
        """Test parents and children via INHERITS."""
        analysis = CodeAnalysis(indexed)
        square = await analysis.class_hierarchy("Square")
        assert [p["name"] for p in square["parents"]] == ["Shape"]
        assert square["children"] == []
        shape = await analysis.class_hierarchy("Shape")
        assert [c["name"] for c in shape["children"]] == ["Square"]

    @pytest.mark.asyncio
    async def test_call_chain(self, indexed):
        """Test multi-hop call paths."""
        chains = await CodeAnalysis(indexed).call_chain("main")
        assert [c["trail"] for c in chains] == ["main -> report"]

    @pytest.mark.asyncio
    async def test_dead_code(self, indexed, project_dir: Path):
        """Test that uncalled functions are reported, constructors excluded."""
        rows = await CodeAnalysis(indexed).dead_code(str(project_dir))
        assert {r["name"] for r in rows} == {"unused", "main", "area", "perimeter"}

    @pytest.mark.asyncio
    async def test_imports(self, indexed, project_dir: Path):
        """Test importer lookup and per-file module dependencies."""
        analysis = CodeAnalysis(indexed)
        importers = await analysis.find_importers("./math")
        assert [os.path.basename(i["path"]) for i in importers] == ["shapes.js"]
        assert importers[0]["imported_name"] == "add"
        deps = await analysis.module_deps(str(project_dir / "index.js"))
        assert [(d["module"], d["imported_name"]) for d in deps] == [("./src/shapes", "Square")]

    @pytest.mark.asyncio
    async def test_complexity(self, indexed):
        """Test complexity ranking and lookup."""
        analysis = CodeAnalysis(indexed)
        top = await analysis.most_complex_functions(limit=1)
        assert top[0]["name"] == "unused"
        assert top[0]["complexity"] == 4
        rows = await analysis.calculate_complexity("add")
        assert [r["complexity"] for r in rows] == [1]


class TestRepositoryManager:
    """Tests for RepositoryManager."""

    @pytest.mark.asyncio
    async def test_list_and_stats(self, indexed, project_dir: Path):
        """Test repository listing and graph statistics."""
        manager = RepositoryManager(indexed)
        repos = await manager.list_repositories()
        assert [(r["path"], r["files"]) for r in repos] == [(str(project_dir), 3)]
        stats = await manager.get_stats()
        assert stats.repositories == 1
        assert stats.files == 3
        assert stats.functions == 7
        assert stats.classes == 2
        assert stats.relationships > 0
        assert stats.described == 0

    @pytest.mark.asyncio
    async def test_delete_repository(self, indexed, make_pipeline, temp_dir: Path, project_dir: Path):
        """Test that deleting one repository leaves another intact."""
        other = temp_dir / "other"
        other.mkdir()
        (other / "x.js").write_text("function x() {}\n", encoding="utf-8")
        await make_pipeline().run(str(other))

        manager = RepositoryManager(indexed)
        await manager.delete_repository(str(project_dir))
        repos = await manager.list_repositories()
        assert [r["path"] for r in repos] == [str(other)]
        stats = await manager.get_stats()
        assert (stats.files, stats.functions, stats.classes, stats.modules) == (1, 1, 0, 0)

    @pytest.mark.asyncio
    async def test_delete_all(self, indexed):
        """Test that delete_all empties the graph."""
        manager = RepositoryManager(indexed)
        await manager.delete_all()
        stats = await manager.get_stats()
        assert (stats.repositories, stats.files, stats.relationships) == (0, 0, 0)


class TestCodeSearch:
    """Tests for CodeSearch."""

    @pytest.mark.asyncio
    async def test_fulltext_search(self, indexed):
        """Test prefix matching on symbol names."""
        hits = await CodeSearch(indexed).fulltext_search("perim")
        assert [(h.label, h.name) for h in hits] == [("Function", "perimeter")]
        assert await CodeSearch(indexed).fulltext_search("   ") == []

    @pytest.mark.asyncio
    async def test_substring_fallback(self, indexed):
        """Test the search path used without a full-text index."""
        indexed.fulltext = False
        hits = await CodeSearch(indexed).fulltext_search("quar")
        assert [h.name for h in hits] == ["Square"]

    @pytest.mark.asyncio
    async def test_semantic_search_needs_embedder(self, indexed):
        """Test that semantic search without an embedder is an error."""
        with pytest.raises(GraphStoreError):
            await CodeSearch(indexed).semantic_search("adds numbers")
        assert await CodeSearch(indexed, HashEmbeddingModel()).semantic_search("adds numbers") == []

    @pytest.mark.asyncio
    async def test_read_query_guard(self, indexed):
        """Test that only read-only queries are accepted."""
        search = CodeSearch(indexed)
        rows = await search.read_query("SELECT COUNT(*) AS n FROM nodes WHERE label = 'File'")
        assert rows == [{"n": 3}]
        for query in ("DELETE FROM nodes", "SELECT 1; DROP TABLE nodes", "PRAGMA table_info(nodes)"):
            with pytest.raises(GraphStoreError):
                await search.read_query(query)
