"""Description + embedding generation gated by content hashes.

A symbol is (re)described only when the sha256 of its text differs from the
hash stored with its last successful enrichment, so re-indexing an unchanged
file costs no provider calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .embeddings import EmbeddingGenerator
from .models import ParsedFile, SymbolSummary
from .storage import GraphStore

logger = logging.getLogger(__name__)

MAX_SOURCE_CHARS = 2000
MAX_TOKENS = 150

PROMPT_TEMPLATE = """Describe the following {kind} in one or two sentences.
Say what it does and what it is for; do not restate the code.

{kind} `{name}` in {location}:

{source}
"""


class DescriptionGenerator(Protocol):
    async def generate_description(self, prompt: str, max_tokens: int = MAX_TOKENS) -> Optional[str]:
        ...


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class _Target:
    label: str
    kind: str
    name: str
    path: str
    line_number: int
    text: str

    @property
    def key(self) -> Dict[str, Any]:
        if self.label in ("Function", "Class"):
            return {"name": self.name, "path": self.path}
        return {"path": self.path}

    @property
    def key_name(self) -> str:
        return self.name if self.label in ("Function", "Class") else ""


class EnrichmentGate:
    """Generates descriptions and embeddings for changed symbols only."""

    def __init__(
        self,
        describer: DescriptionGenerator,
        embedder: EmbeddingGenerator,
        graph: GraphStore,
        max_source_chars: int = MAX_SOURCE_CHARS,
        max_tokens: int = MAX_TOKENS,
    ) -> None:
        self.describer = describer
        self.embedder = embedder
        self.graph = graph
        self.max_source_chars = max_source_chars
        self.max_tokens = max_tokens

    async def describe_file(self, parsed: ParsedFile) -> List[SymbolSummary]:
        """Enrich every function and class with source, plus the file itself."""
        targets: Dict[Tuple[str, str], _Target] = {}

        def add(target: _Target) -> None:
            targets.setdefault((target.label, target.key_name), target)

        for fn in parsed.functions:
            if fn.source:
                add(_Target("Function", "function", fn.name, parsed.path, fn.line_number, fn.source))
        for cls in parsed.classes:
            if cls.source:
                add(_Target("Class", "class", cls.name, parsed.path, cls.line_number, cls.source))
        if parsed.source:
            add(_Target("File", "file", os.path.basename(parsed.path), parsed.path, 1, parsed.source))

        results = await asyncio.gather(*(self._process(t) for t in targets.values()))
        await self.graph.prune_enrichment(parsed.path, set(targets))
        return [r for r in results if r is not None]

    async def describe_directory(
        self, dir_path: str, file_names: Iterable[str], label: str = "Directory",
    ) -> Optional[SymbolSummary]:
        """Describe a directory from the names of the files it contains."""
        names = sorted(file_names)
        if not names:
            return None
        listing = "\n".join(names)
        return await self._process(
            _Target(label, "directory", os.path.basename(dir_path) or dir_path, dir_path, 0, listing)
        )

    def build_prompt(self, target: _Target) -> str:
        location = target.path if target.line_number <= 1 else f"{target.path}:{target.line_number}"
        return PROMPT_TEMPLATE.format(
            kind=target.kind,
            name=target.name,
            location=location,
            source=target.text[: self.max_source_chars],
        )

    async def _process(self, target: _Target) -> Optional[SymbolSummary]:
        try:
            digest = content_hash(target.text)
            if await self.graph.get_content_hash(target.label, target.key) == digest:
                logger.debug("Unchanged %s %s in %s", target.kind, target.name, target.path)
                return None
            description = await self.describer.generate_description(
                self.build_prompt(target), max_tokens=self.max_tokens,
            )
            if not description:
                logger.info("No description produced for %s %s", target.kind, target.name)
                return None
            embedding = await self.embedder.generate_embedding(description)
            await self.graph.set_enrichment(target.label, target.key, embedding, description, digest)
        except Exception as exc:
            logger.warning(
                "Enrichment failed for %s %s in %s: %s", target.kind, target.name, target.path, exc,
            )
            return None
        return SymbolSummary(
            name=target.name,
            kind=target.kind,
            path=target.path,
            line_number=target.line_number,
            description=description,
            content_hash=digest,
        )
