"""
External OpenSCAD libraries (BOSL2, MCAD, ...) for the sandbox.

Scripts pull libraries in with ``include <BOSL2/std.scad>`` or
``use <MCAD/gears.scad>``. The sandbox stages each referenced library into
the compiler instance's library directory before compiling.

Archives are fetched over HTTP at most once per catalog and kept in a
shared cache; a fetch race costs a duplicate download, never a corrupt
entry.
"""

from __future__ import annotations

import io
import logging
import re
import threading
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, Mapping, Optional

import requests

from scadsafe.compiler import ScadSafeError

logger = logging.getLogger(__name__)

_LIBRARY_REF_RE = re.compile(r'\b(?:include|use)\s*<\s*([A-Za-z0-9_\-]+)/')

USER_AGENT = "scadsafe/0.2 (library fetch)"


class LibraryFetchError(ScadSafeError):
    """A library archive could not be downloaded."""


def detect_libraries(script: str, known: Optional[Mapping[str, str]] = None) -> list[str]:
    """Library names referenced by ``include``/``use``, in first-use order.

    When ``known`` is given only names present in it are returned.
    """
    names: list[str] = []
    for match in _LIBRARY_REF_RE.finditer(script or ""):
        name = match.group(1)
        if name in names:
            continue
        if known is not None and name not in known:
            continue
        names.append(name)
    return names


class HttpLibraryFetcher:
    """Download library zip archives with requests."""

    def __init__(self, catalog: Mapping[str, str], timeout: float = 60.0):
        self.catalog = dict(catalog)
        self.timeout = timeout

    def __call__(self, name: str) -> bytes:
        url = self.catalog.get(name)
        if not url:
            raise LibraryFetchError(f"Unknown library: {name}")
        logger.info("Fetching library %s from %s", name, url)
        try:
            resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise LibraryFetchError(f"Failed to fetch {name}: {e}") from e
        if not resp.content:
            raise LibraryFetchError(f"Empty archive for {name}")
        return resp.content


Fetcher = Callable[[str], bytes]


class LibraryCache:
    """
    Process-wide archive cache keyed by library name.

    Each name is fetched at most once per cache; failures are not cached,
    so a later compile may retry a library that was unreachable.
    """

    def __init__(self, fetcher: Fetcher):
        self.fetcher = fetcher
        self._entries: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> bytes:
        with self._lock:
            cached = self._entries.get(name)
        if cached is not None:
            return cached
        data = self.fetcher(name)
        with self._lock:
            return self._entries.setdefault(name, data)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def unpack_library(archive: bytes, dest: Path) -> int:
    """Extract a zip archive into ``dest``. Returns the number of files written.

    GitHub-style archives wrap everything in one ``<repo>-<branch>/``
    directory; that prefix is dropped so ``include <NAME/file.scad>``
    resolves. Entries that would land outside ``dest`` are skipped.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    written = 0
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        members = [info for info in zf.infolist() if not info.is_dir()]
        prefix = _common_top_dir([info.filename for info in members])
        for info in members:
            relative = PurePosixPath(info.filename)
            if prefix is not None:
                relative = relative.relative_to(prefix)
            target = (dest / relative).resolve()
            if root not in target.parents:
                logger.warning("Skipping archive entry outside library dir: %s", info.filename)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(zf.read(info))
            written += 1
    return written


def _common_top_dir(names: list[str]) -> Optional[str]:
    tops = {PurePosixPath(n).parts[0] for n in names if len(PurePosixPath(n).parts) > 1}
    if len(tops) != 1:
        return None
    top = tops.pop()
    if all(PurePosixPath(n).parts[0] == top and len(PurePosixPath(n).parts) > 1 for n in names):
        return top
    return None


_shared_caches: dict[tuple, LibraryCache] = {}
_shared_lock = threading.Lock()


def shared_cache(catalog: Mapping[str, str], timeout: float = 60.0) -> LibraryCache:
    """The process-wide cache for one catalog, created on first use.

    Engines configured with the same catalog share archives; a different
    catalog gets its own cache so its names resolve to its own URLs.
    """
    key = (frozenset(catalog.items()), timeout)
    with _shared_lock:
        cache = _shared_caches.get(key)
        if cache is None:
            cache = _shared_caches[key] = LibraryCache(HttpLibraryFetcher(catalog, timeout))
        return cache
