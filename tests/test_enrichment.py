"""Tests for the content-hash enrichment gate."""

from typing import Optional

import pytest

from codegraph_indexer.embeddings import HashEmbeddingModel
from codegraph_indexer.enrichment import EnrichmentGate, _Target, content_hash
from codegraph_indexer.models import ParsedClass, ParsedFile, ParsedFunction

from conftest import FakeDescriber


def _parsed(*functions: ParsedFunction, source: str = "file text") -> ParsedFile:
    return ParsedFile(path="/r/a.js", lang="javascript", repo_path="/r", source=source,
                      functions=list(functions))


def _fn(name: str, line: int, source: str) -> ParsedFunction:
    return ParsedFunction(name=name, line_number=line, end_line=line + 1, source=source)


class SilentDescriber:
    async def generate_description(self, prompt: str, max_tokens: int = 150) -> Optional[str]:
        return None


class TestEnrichmentGate:
    """Tests for EnrichmentGate."""

    @pytest.mark.asyncio
    async def test_describes_then_skips_unchanged(self, graph_store):
        """Test that a second pass over identical text makes no calls."""
        describer = FakeDescriber()
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        parsed = _parsed(_fn("add", 1, "function add(a, b) { return a + b; }"))

        summaries = await gate.describe_file(parsed)
        assert {s.name for s in summaries} == {"add", "a.js"}
        assert len(describer.prompts) == 2

        assert await gate.describe_file(parsed) == []
        assert len(describer.prompts) == 2

    @pytest.mark.asyncio
    async def test_changed_text_is_described_again(self, graph_store):
        """Test that a different hash triggers a new description."""
        describer = FakeDescriber()
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        await gate.describe_file(_parsed(_fn("add", 1, "v1")))
        summaries = await gate.describe_file(_parsed(_fn("add", 1, "v2")))
        assert [s.name for s in summaries] == ["add"]
        assert summaries[0].content_hash == content_hash("v2")

    @pytest.mark.asyncio
    async def test_same_name_described_once(self, graph_store):
        """Test that overloads sharing a name and file share one description."""
        describer = FakeDescriber()
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        await gate.describe_file(_parsed(_fn("f", 1, "first"), _fn("f", 5, "second"), source=""))
        assert len(describer.prompts) == 1

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, graph_store):
        """Test that one failing symbol does not stop the others."""
        describer = FakeDescriber(fail_for={"bad"})
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        summaries = await gate.describe_file(_parsed(_fn("bad", 1, "x"), _fn("good", 3, "y"), source=""))
        assert [s.name for s in summaries] == ["good"]
        assert await graph_store.get_content_hash("Function", {"name": "bad", "path": "/r/a.js"}) is None

    @pytest.mark.asyncio
    async def test_empty_description_not_stored(self, graph_store):
        """Test that a provider returning nothing leaves no hash behind."""
        gate = EnrichmentGate(SilentDescriber(), HashEmbeddingModel(), graph_store)
        assert await gate.describe_file(_parsed(_fn("add", 1, "x"), source="")) == []
        assert await graph_store.get_content_hash("Function", {"name": "add", "path": "/r/a.js"}) is None

    @pytest.mark.asyncio
    async def test_vanished_symbols_are_pruned(self, graph_store):
        """Test that enrichment for removed functions is forgotten."""
        gate = EnrichmentGate(FakeDescriber(), HashEmbeddingModel(), graph_store)
        await gate.describe_file(_parsed(_fn("keep", 1, "k"), _fn("gone", 3, "g")))
        await gate.describe_file(_parsed(_fn("keep", 1, "k")))
        assert await graph_store.get_content_hash("Function", {"name": "keep", "path": "/r/a.js"})
        assert await graph_store.get_content_hash("Function", {"name": "gone", "path": "/r/a.js"}) is None

    @pytest.mark.asyncio
    async def test_classes_are_described(self, graph_store):
        """Test that classes with source get their own prompt."""
        describer = FakeDescriber()
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        parsed = _parsed(source="")
        parsed.classes.append(ParsedClass(name="Shape", line_number=2, end_line=4, source="class Shape {}"))
        await gate.describe_file(parsed)
        assert describer.prompts[0].splitlines()[3] == "class `Shape` in /r/a.js:2:"

    @pytest.mark.asyncio
    async def test_directory_listing(self, graph_store):
        """Test directory descriptions built from file names."""
        describer = FakeDescriber()
        gate = EnrichmentGate(describer, HashEmbeddingModel(), graph_store)
        summary = await gate.describe_directory("/r/src", ["b.js", "a.js"])
        assert summary is not None and summary.name == "src"
        assert "a.js\nb.js" in describer.prompts[0]
        assert await gate.describe_directory("/r/src", ["a.js", "b.js"]) is None
        assert await gate.describe_directory("/r/empty", []) is None

    def test_prompt_truncates_source(self):
        """Test that long sources are cut to max_source_chars."""
        gate = EnrichmentGate(FakeDescriber(), HashEmbeddingModel(), None, max_source_chars=10)
        prompt = gate.build_prompt(_Target("Function", "function", "f", "/r/a.js", 3, "x" * 50))
        assert "x" * 10 in prompt
        assert "x" * 11 not in prompt
        assert "/r/a.js:3" in prompt
