"""Pytest configuration and fixtures for the CodeGraph indexer tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set

import pytest
import pytest_asyncio

from codegraph_indexer.embeddings import HashEmbeddingModel
from codegraph_indexer.enrichment import EnrichmentGate
from codegraph_indexer.filesystem import LocalFileSystem
from codegraph_indexer.indexer import IndexingPipeline
from codegraph_indexer.job_store import InMemoryJobStore
from codegraph_indexer.parser import default_parsers
from codegraph_indexer.storage import SQLiteGraphStore


SAMPLE_PROJECT: Dict[str, str] = {
    "src/math.js": """/**
 * Adds two numbers.
 */
export function add(a, b) {
  return a + b;
}

export function unused(x) {
  if (x > 1 && x < 10) {
    return x;
  }
  return x > 0 ? 1 : 0;
}
""",
    "src/shapes.js": """import { add } from './math';

export class Shape {
  area() {
    return 0;
  }
}

export class Square extends Shape {
  constructor(side) {
    super();
    this.side = side;
  }

  perimeter() {
    return add(this.side, this.side) * 2;
  }
}
""",
    "index.js": """const { Square } = require('./src/shapes');

function main() {
  const sq = new Square(2);
  return report(sq);
}

function report(shape) {
  return shape.perimeter();
}
""",
    "node_modules/lib/index.js": "function vendored() {}\n",
    "build/out.js": "function generated() {}\n",
    "scratch/tmp.js": "function scratch() {}\n",
    ".gitignore": "scratch/\n",
    "README.md": "# sample\n",
}


def write_files(root: Path, files: Dict[str, str]) -> Path:
    """Create *files* (relative path -> content) under *root*."""
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


class FakeDescriber:
    """Stands in for the task scheduler; records every prompt it gets."""

    def __init__(self, fail_for: Optional[Set[str]] = None) -> None:
        self.prompts: List[str] = []
        self.fail_for = fail_for or set()

    async def generate_description(self, prompt: str, max_tokens: int = 150) -> Optional[str]:
        self.prompts.append(prompt)
        for name in self.fail_for:
            if f"`{name}`" in prompt:
                raise RuntimeError(f"provider exploded on {name}")
        first_line = prompt.splitlines()[3] if len(prompt.splitlines()) > 3 else prompt
        return f"Summary of {first_line}"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """A small JavaScript project with ignored directories."""
    return write_files(temp_dir / "project", SAMPLE_PROJECT)


@pytest.fixture
def sample_js_code() -> str:
    """JavaScript exercising every construct the parser extracts."""
    return """import { helper as h, other } from './utils';
import Default from 'lib';
import * as ns from 'ns';
const fs = require('fs');

/**
 * Adds numbers.
 */
function add(a, b = 1, ...rest) {
  if (a > 0 && b > 0) {
    return a + b;
  }
  return a > b ? a : b;
}

const mul = (x, y) => x * y;

class Animal extends Base {
  constructor(name) {
    this.name = name;
  }
  static create() {
    return new Animal('x');
  }
  get label() {
    return this.name;
  }
  speak() {
    h(this.name);
    console.log('hi');
  }
}

async function run() {
  const result = add(1, 2);
  return mul(result, 2);
}
"""


@pytest.fixture
def sample_python_code() -> str:
    """Sample Python code for testing the parser."""
    return '''"""Sample module for testing."""
import os
from .base import Base as B

LIMIT: int = 3


def hello(name, *args, greeting="hi", **kwargs):
    """Say hello."""
    if name and greeting or not args:
        return f"{greeting}, {name}!"
    return os.path.join(name, "x")


class Calculator(B):
    """Simple calculator."""

    def __init__(self):
        self.total = 0

    @staticmethod
    def add(a, b):
        return a + b

    async def multiply(self, a, b):
        result = self.add(a, 0)
        for _ in range(b - 1):
            result = self.add(result, a)
        return result
'''


@pytest_asyncio.fixture
async def graph_store(temp_dir: Path):
    """An initialised SQLite graph store without a vector index."""
    store = SQLiteGraphStore(temp_dir / "graph.sqlite3")
    await store.ensure_schema()
    yield store
    await store.close()


@pytest.fixture
def describer() -> FakeDescriber:
    return FakeDescriber()


@pytest.fixture
def make_pipeline(graph_store: SQLiteGraphStore):
    """Factory for pipelines over the shared graph store."""

    def factory(enrich_with: Optional[FakeDescriber] = None, **kwargs) -> IndexingPipeline:
        enrichment = None
        if enrich_with is not None:
            enrichment = EnrichmentGate(enrich_with, HashEmbeddingModel(), graph_store)
        return IndexingPipeline(
            graph_store,
            LocalFileSystem(),
            default_parsers(),
            InMemoryJobStore(),
            enrichment=enrichment,
            **kwargs,
        )

    return factory
