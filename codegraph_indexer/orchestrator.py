"""Composition root: wires configuration into a ready-to-use service graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .analysis import CodeAnalysis, CodeSearch, RepositoryManager
from .config import IndexerConfig, ensure_base_dirs, load_config
from .embeddings import EmbeddingGenerator, get_embedder
from .enrichment import EnrichmentGate
from .filesystem import FileSystem, LocalFileSystem
from .indexer import IndexingPipeline
from .job_store import InMemoryJobStore
from .llm import create_provider
from .parser import default_parsers
from .scheduler import ProviderSlot, TaskScheduler
from .storage import GraphStore, SQLiteGraphStore
from .vector_store import VectorStore
from .watcher import FileWatcher

logger = logging.getLogger(__name__)


@dataclass
class IndexerServices:
    config: IndexerConfig
    graph: GraphStore
    jobs: InMemoryJobStore
    scheduler: TaskScheduler
    embedder: EmbeddingGenerator
    pipeline: IndexingPipeline
    watcher: FileWatcher
    analysis: CodeAnalysis
    repositories: RepositoryManager
    search: CodeSearch

    async def close(self) -> None:
        await self.watcher.close_all()
        await self.scheduler.close()
        await self.graph.close()


def build_services(
    cfg: Optional[IndexerConfig] = None,
    graph: Optional[GraphStore] = None,
    fs: Optional[FileSystem] = None,
    scheduler: Optional[TaskScheduler] = None,
    embedder: Optional[EmbeddingGenerator] = None,
) -> IndexerServices:
    """Build every service from *cfg*; any port can be replaced for tests."""
    cfg = cfg or load_config()
    ensure_base_dirs(cfg)

    if graph is None:
        graph = SQLiteGraphStore(cfg.database, VectorStore(cfg.vector_dir))
    fs = fs or LocalFileSystem()
    if scheduler is None:
        slots = [ProviderSlot(name=p.name, provider=create_provider(p), limit=p.limit) for p in cfg.providers]
        scheduler = TaskScheduler(slots, max_retries=cfg.max_retries, backoff_unit=cfg.backoff_unit)
    embedder = embedder or get_embedder(cfg)

    enrichment = None
    if cfg.enrich and scheduler.enabled:
        enrichment = EnrichmentGate(
            scheduler, embedder, graph,
            max_source_chars=cfg.max_source_chars, max_tokens=cfg.max_tokens,
        )
    elif cfg.enrich:
        logger.info("No description providers configured; enrichment disabled.")

    jobs = InMemoryJobStore(max_jobs=cfg.job_history)
    pipeline = IndexingPipeline(
        graph, fs, default_parsers(), jobs,
        enrichment=enrichment,
        write_concurrency=cfg.write_concurrency,
        relink_dependents=cfg.relink_dependents,
    )
    return IndexerServices(
        config=cfg,
        graph=graph,
        jobs=jobs,
        scheduler=scheduler,
        embedder=embedder,
        pipeline=pipeline,
        watcher=FileWatcher(pipeline, debounce_seconds=cfg.debounce_seconds),
        analysis=CodeAnalysis(graph),
        repositories=RepositoryManager(graph),
        search=CodeSearch(graph, embedder),
    )
