"""Indexing pipeline: source tree -> consistent code graph.

A run goes through fixed phases, each a barrier for the next:

1. **collecting**: files with a registered extension, minus ignored paths.
2. **pre-scanning**: every parser reports declared/exported names; the
   merged map is read-only from here on.
3. **writing**: each file is replaced in the graph inside one batch.
4. **linking**: inheritance first, then calls, so call resolution sees the
   final set of nodes.
5. **enriching**: descriptions + embeddings for changed symbols.

A failing file is logged and skipped; only failures outside the per-file
work (schema setup, enumeration) fail the job.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .enrichment import EnrichmentGate
from .filesystem import FileSystem, IgnoreRules
from .job_store import JobStore, finish
from .models import ImportsMap, IndexJob, JobPhase, ParsedFile, SourceFile
from .parser import LanguageParser, drop_file_from_map, merge_imports_maps, parser_map
from .storage import GraphStore
from .symbol_resolver import resolve_symbol

logger = logging.getLogger(__name__)

MAX_STORED_SOURCE = 5000
LINK_RELATIONSHIPS = ("CALLS", "INHERITS", "IMPLEMENTS")


def _simple_name(name: str) -> str:
    return name.rsplit(".", 1)[-1].strip()


class IndexingPipeline:
    """Builds and maintains the graph for directories and single files."""

    def __init__(
        self,
        graph: GraphStore,
        fs: FileSystem,
        parsers: Sequence[LanguageParser],
        jobs: JobStore,
        enrichment: Optional[EnrichmentGate] = None,
        write_concurrency: int = 4,
        relink_dependents: bool = False,
    ) -> None:
        self.graph = graph
        self.fs = fs
        self.parsers = list(parsers)
        self.jobs = jobs
        self.enrichment = enrichment
        self.write_concurrency = max(1, write_concurrency)
        self.relink_dependents = relink_dependents
        self._by_ext = parser_map(self.parsers)
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    @property
    def supported_extensions(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_ext))

    def parser_for(self, file_path: str) -> Optional[LanguageParser]:
        return self._by_ext.get(os.path.splitext(file_path)[1].lower())

    async def _read(self, path: str) -> str:
        return await asyncio.to_thread(self.fs.read_file, path)

    # ------------------------------------------------------------------
    # Directory runs
    # ------------------------------------------------------------------

    async def index_directory(self, dir_path: str, is_dependency: bool = False) -> str:
        """Start indexing *dir_path* in the background and return the job id."""
        root = os.path.abspath(dir_path)
        job = self.jobs.create(root)
        task = asyncio.get_running_loop().create_task(self._run(job.id, root, is_dependency))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        logger.info("Started %s for %s", job.id, root)
        return job.id

    async def wait(self, job_id: str) -> Optional[IndexJob]:
        """Wait for a background run to finish and return the final job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.jobs.get(job_id)

    async def run(self, dir_path: str, is_dependency: bool = False) -> Optional[IndexJob]:
        """Index *dir_path* and wait for the result."""
        return await self.wait(await self.index_directory(dir_path, is_dependency))

    async def _run(self, job_id: str, root: str, is_dependency: bool) -> None:
        try:
            await self.graph.ensure_schema()
            files = await self.collect_files(root)
            self.jobs.update(job_id, files_total=len(files), phase=JobPhase.PRE_SCANNING)
            logger.info("%s: %d files to index under %s", job_id, len(files), root)

            imports_map = await self._pre_scan_all(files)

            self.jobs.update(job_id, phase=JobPhase.WRITING)
            written = await self._write_all(job_id, files, root, is_dependency)

            self.jobs.update(job_id, phase=JobPhase.LINKING)
            await self._link_all(written, imports_map)

            if self.enrichment is not None and not is_dependency:
                self.jobs.update(job_id, phase=JobPhase.ENRICHING)
                await self._enrich_all(root, written)
        except Exception as exc:
            logger.exception("Indexing %s failed", root)
            finish(self.jobs, job_id, error=str(exc) or type(exc).__name__)
            return
        job = finish(self.jobs, job_id)
        if job is not None:
            logger.info(
                "%s completed: %d/%d files (%d written)",
                job_id, job.files_processed, job.files_total, len(written),
            )

    async def collect_files(self, dir_path: str) -> List[str]:
        """Absolute paths of every indexable file under *dir_path*."""
        root = os.path.abspath(dir_path)
        ignore = IgnoreRules.for_root(root, self.fs)
        patterns = [f"**/*{ext}" for ext in self.supported_extensions]
        return await asyncio.to_thread(self.fs.glob, patterns, root, ignore)

    async def build_imports_map(self, dir_path: str) -> ImportsMap:
        """Collect and pre-scan *dir_path*; used to seed a watch root."""
        return await self._pre_scan_all(await self.collect_files(dir_path))

    async def _pre_scan_all(self, files: Iterable[str]) -> ImportsMap:
        groups: Dict[int, Tuple[LanguageParser, List[SourceFile]]] = {}
        for path in files:
            parser = self.parser_for(path)
            if parser is None:
                continue
            try:
                source = await self._read(path)
            except OSError as exc:
                logger.warning("Pre-scan could not read %s: %s", path, exc)
                continue
            groups.setdefault(id(parser), (parser, []))[1].append(SourceFile(path, source))

        imports_map: ImportsMap = {}
        for parser, batch in groups.values():
            merge_imports_maps(imports_map, parser.pre_scan(batch))
        return imports_map

    async def _write_all(
        self, job_id: str, files: Sequence[str], root: str, is_dependency: bool,
    ) -> List[ParsedFile]:
        limit = asyncio.Semaphore(self.write_concurrency)

        async def write_one(path: str) -> Optional[ParsedFile]:
            async with limit:
                try:
                    return await self.index_file(path, root, is_dependency=is_dependency)
                except Exception as exc:
                    logger.error("Failed to index %s: %s", path, exc)
                    return None
                finally:
                    self.jobs.increment(job_id)

        results = await asyncio.gather(*(write_one(path) for path in files))
        return [parsed for parsed in results if parsed is not None]

    # ------------------------------------------------------------------
    # Single files
    # ------------------------------------------------------------------

    async def index_file(
        self,
        file_path: str,
        repo_path: str,
        imports_map: Optional[ImportsMap] = None,
        is_dependency: bool = False,
        source: Optional[str] = None,
    ) -> Optional[ParsedFile]:
        """Replace one file's subgraph.

        Returns ``None`` for unsupported extensions. When *imports_map* is
        given, the file's own outgoing INHERITS/IMPLEMENTS/CALLS edges are
        linked right after the write.
        """
        path = os.path.abspath(file_path)
        parser = self.parser_for(path)
        if parser is None:
            return None
        if source is None:
            source = await self._read(path)
        parsed = parser.parse(source, path, is_dependency=is_dependency)
        parsed.repo_path = os.path.abspath(repo_path)

        await self.graph.execute_batch(lambda: self._write_file(parsed))

        if imports_map is not None:
            await self._link_file(parsed, imports_map)
        return parsed

    async def remove_file(self, file_path: str) -> None:
        """Drop a deleted file's subgraph and its cached enrichment."""
        path = os.path.abspath(file_path)
        await self.graph.delete_file_subtree(path)
        await self.graph.drop_enrichment(path)
        logger.info("Removed %s from the graph", path)

    async def sync_file(self, file_path: str, repo_path: str, imports_map: ImportsMap) -> Optional[ParsedFile]:
        """Bring one changed file up to date (the watcher's path).

        The file's entries in *imports_map* are refreshed, the file is
        re-written and its outgoing links recomputed, then it is enriched.
        With ``relink_dependents`` on, files that pointed into it are
        re-linked as well.
        """
        path = os.path.abspath(file_path)
        parser = self.parser_for(path)
        if parser is None:
            return None
        dependents = await self._dependents_of(path) if self.relink_dependents else []
        source = await self._read(path)

        drop_file_from_map(imports_map, path)
        merge_imports_maps(imports_map, parser.pre_scan([SourceFile(path, source)]))

        parsed = await self.index_file(path, repo_path, imports_map, source=source)
        if parsed is None:
            return None
        if self.enrichment is not None:
            await self.enrichment.describe_file(parsed)
        for dependent in dependents:
            await self._relink(dependent, repo_path, imports_map)
        return parsed

    async def _dependents_of(self, path: str) -> List[str]:
        rels = ", ".join(f"'{rel}'" for rel in LINK_RELATIONSHIPS)
        rows = await self.graph.run_query(
            f"""
            SELECT DISTINCT src.path AS path
            FROM edges e
            JOIN nodes src ON src.node_id = e.src
            JOIN nodes dst ON dst.node_id = e.dst
            WHERE dst.path = :path AND src.path != :path AND e.rel_type IN ({rels})
            """,
            {"path": path},
        )
        return [row["path"] for row in rows if row["path"]]

    async def _relink(self, path: str, repo_path: str, imports_map: ImportsMap) -> None:
        parser = self.parser_for(path)
        if parser is None or not self.fs.exists(path):
            return
        try:
            parsed = parser.parse(await self._read(path), path)
            parsed.repo_path = repo_path
            await self._link_file(parsed, imports_map)
        except Exception as exc:
            logger.warning("Re-linking dependent %s failed: %s", path, exc)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def _write_file(self, parsed: ParsedFile) -> None:
        graph = self.graph
        path, repo = parsed.path, parsed.repo_path
        common: Dict[str, Any] = {"repo_path": repo, "lang": parsed.lang, "is_dependency": parsed.is_dependency}

        await graph.delete_file_subtree(path)
        await graph.merge_node(
            "Repository", {"path": repo},
            {"name": os.path.basename(repo) or repo, "repo_path": repo, "is_dependency": parsed.is_dependency},
        )

        parent: Tuple[str, Dict[str, Any]] = ("Repository", {"path": repo})
        rel_dir = os.path.relpath(os.path.dirname(path), repo)
        if rel_dir != "." and not rel_dir.startswith(".."):
            current = repo
            for part in rel_dir.split(os.sep):
                current = os.path.join(current, part)
                await graph.merge_node("Directory", {"path": current}, {"name": part, "repo_path": repo})
                await graph.merge_relationship(parent[0], parent[1], "Directory", {"path": current}, "CONTAINS_DIR")
                parent = ("Directory", {"path": current})

        file_key = {"path": path}
        await graph.merge_node("File", file_key, {"name": os.path.basename(path), **common})
        await graph.merge_relationship(parent[0], parent[1], "File", file_key, "CONTAINS_FILE")

        for fn in parsed.functions:
            key = {"name": fn.name, "path": path, "line_number": fn.line_number}
            await graph.merge_node("Function", key, {
                "end_line": fn.end_line,
                "args": fn.args,
                "source": fn.source[:MAX_STORED_SOURCE] if fn.source else None,
                "docstring": fn.docstring,
                "cyclomatic_complexity": fn.cyclomatic_complexity,
                "context": fn.context,
                "class_context": fn.class_context,
                "is_async": fn.is_async,
                "kind": fn.kind,
                "decorators": fn.decorators or None,
                **common,
            })
            await graph.merge_relationship("File", file_key, "Function", key, "CONTAINS")
            for arg in fn.args:
                param_key = {"name": arg, "function_name": fn.name, "path": path, "line_number": fn.line_number}
                await graph.merge_node("Parameter", param_key, {"repo_path": repo})
                await graph.merge_relationship("Function", key, "Parameter", param_key, "HAS_PARAMETER")

        for cls in parsed.classes:
            key = {"name": cls.name, "path": path, "line_number": cls.line_number}
            await graph.merge_node("Class", key, {
                "end_line": cls.end_line,
                "bases": cls.bases,
                "implements": cls.implements,
                "is_abstract": cls.is_abstract,
                "is_interface": cls.is_interface,
                "source": cls.source[:MAX_STORED_SOURCE] if cls.source else None,
                "docstring": cls.docstring,
                "context": cls.context,
                **common,
            })
            await graph.merge_relationship("File", file_key, "Class", key, "CONTAINS")

        for var in parsed.variables:
            key = {"name": var.name, "path": path, "line_number": var.line_number}
            await graph.merge_node("Variable", key, {
                "value": var.value,
                "type": var.type,
                "context": var.context,
                "class_context": var.class_context,
                **common,
            })
            await graph.merge_relationship("File", file_key, "Variable", key, "CONTAINS")

        for imp in parsed.imports:
            module_key = {"name": imp.source}
            await graph.merge_node("Module", module_key, {"lang": parsed.lang})
            await graph.merge_relationship("File", file_key, "Module", module_key, "IMPORTS", {
                "imported_name": imp.name,
                "alias": imp.alias,
                "line_number": imp.line_number,
                "is_default": imp.is_default,
                "is_namespace": imp.is_namespace,
            })

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    async def _link_all(self, written: Sequence[ParsedFile], imports_map: ImportsMap) -> None:
        for parsed in written:
            try:
                await self._link_inheritance(parsed, imports_map)
            except Exception as exc:
                logger.warning("Inheritance linking failed for %s: %s", parsed.path, exc)
        for parsed in written:
            try:
                await self._link_calls(parsed, imports_map)
            except Exception as exc:
                logger.warning("Call linking failed for %s: %s", parsed.path, exc)

    async def _link_file(self, parsed: ParsedFile, imports_map: ImportsMap) -> None:
        await self._link_inheritance(parsed, imports_map)
        await self._link_calls(parsed, imports_map)

    async def _link_inheritance(self, parsed: ParsedFile, imports_map: ImportsMap) -> None:
        for cls in parsed.classes:
            class_key = {"name": cls.name, "path": parsed.path, "line_number": cls.line_number}
            for rel_type, names in (("INHERITS", cls.bases), ("IMPLEMENTS", cls.implements)):
                for raw in names:
                    name = _simple_name(raw)
                    location = resolve_symbol(name, parsed, imports_map)
                    if location is None:
                        continue
                    await self.graph.merge_relationship(
                        "Class", class_key, "Class", {"name": name, "path": location.file_path}, rel_type,
                    )

    async def _link_calls(self, parsed: ParsedFile, imports_map: ImportsMap) -> None:
        local = {fn.name for fn in parsed.functions}
        for call in parsed.calls:
            if not call.context:
                continue
            location = resolve_symbol(call.name, parsed, imports_map)
            if location is not None:
                target_path = location.file_path
            elif call.name in local:
                target_path = parsed.path
            else:
                continue
            caller_key: Dict[str, Any] = {"name": call.context, "path": parsed.path}
            if call.context_line is not None:
                caller_key["line_number"] = call.context_line
            await self.graph.merge_relationship(
                "Function", caller_key,
                "Function", {"name": call.name, "path": target_path},
                "CALLS", {"line_number": call.line_number},
            )

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def _enrich_all(self, root: str, written: Sequence[ParsedFile]) -> None:
        assert self.enrichment is not None
        directories: Dict[str, List[str]] = {}
        for parsed in written:
            try:
                await self.enrichment.describe_file(parsed)
            except Exception as exc:
                logger.warning("Enrichment failed for %s: %s", parsed.path, exc)
            directories.setdefault(os.path.dirname(parsed.path), []).append(os.path.basename(parsed.path))

        for directory, names in sorted(directories.items()):
            label = "Repository" if directory == root else "Directory"
            try:
                await self.enrichment.describe_directory(directory, names, label=label)
            except Exception as exc:
                logger.warning("Directory enrichment failed for %s: %s", directory, exc)
