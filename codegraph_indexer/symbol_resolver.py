"""Resolve a referenced name to the location that declares it."""

from __future__ import annotations

from typing import List, Optional

from .models import ImportsMap, Location, ParsedFile


def _pick(candidates: List[Location], referencing_path: str) -> Optional[Location]:
    if not candidates:
        return None
    for loc in candidates:
        if loc.file_path != referencing_path:
            return loc
    return candidates[0]


def resolve_symbol(name: str, parsed: ParsedFile, imports_map: ImportsMap) -> Optional[Location]:
    """Best-effort lookup of *name* as seen from *parsed*.

    An explicit import of the name (by original name or alias) wins; the map
    is then consulted for the referenced name first and the un-aliased
    original second. Without an import the name is looked up directly. When
    several files declare it, a location outside the referencing file is
    preferred. Returns ``None`` when nothing matches.
    """
    if not name:
        return None
    for imp in parsed.imports:
        if imp.name == name or imp.alias == name:
            for key in (name, imp.name, imp.alias):
                if key and imports_map.get(key):
                    return _pick(imports_map[key], parsed.path)
    return _pick(imports_map.get(name, []), parsed.path)
