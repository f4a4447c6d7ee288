"""
Version lineage: the append-only history of one design.

Compilation is asynchronous, so a result may arrive after the user has
already asked for another refinement. Results are therefore addressed to
a Version by its own id and never to "whatever is latest".

Lineages and Versions are immutable values; ``LineageBook`` is the only
mutable piece and swaps whole Lineage values under a lock.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from scadsafe.core import JobResult, Success, TemplateFallback

logger = logging.getLogger(__name__)


class VersionStatus(Enum):
    PENDING  = "pending"
    COMPILED = "compiled"
    FAILED   = "failed"


@dataclass(frozen=True)
class Version:
    id: str
    number: int
    script: str
    parent_version_id: Optional[str] = None
    status: VersionStatus = VersionStatus.PENDING
    artifact: Optional[bytes] = None
    error: Optional[str] = None
    result: Optional[JobResult] = None
    is_latest: bool = False


@dataclass(frozen=True)
class Lineage:
    id: str
    versions: tuple[Version, ...] = ()

    @property
    def latest_version_number(self) -> int:
        return self.versions[-1].number if self.versions else 0

    @property
    def latest(self) -> Optional[Version]:
        for version in self.versions:
            if version.is_latest:
                return version
        return None

    def version(self, version_id: str) -> Optional[Version]:
        for version in self.versions:
            if version.id == version_id:
                return version
        return None

    @property
    def displayed_artifact(self) -> Optional[bytes]:
        """Most recent compiled artifact, so a viewer keeps the last model while the next compiles."""
        for version in reversed(self.versions):
            if version.status is VersionStatus.COMPILED and version.artifact:
                return version.artifact
        return None


def _settle(version: Version, result: JobResult) -> Version:
    """Attach a terminal job result to a version."""
    if isinstance(result, (Success, TemplateFallback)) and result.artifact:
        return replace(version, status=VersionStatus.COMPILED, artifact=result.artifact,
                       error=None, result=result)
    if isinstance(result, TemplateFallback):
        return replace(version, status=VersionStatus.FAILED, artifact=None,
                       error=f"Template {result.template_name} was not compiled", result=result)
    error = getattr(result, "message", None) or str(getattr(result, "violation", "")) or "failed"
    return replace(version, status=VersionStatus.FAILED, artifact=None, error=error, result=result)


class LineageBook:
    """
    In-memory store of lineages, mutated only through its actions.

    ``append_version`` calls for one lineage must be serialised by the
    caller; ``apply_result`` may arrive in any order and is idempotent.
    """

    def __init__(self):
        self._lineages: dict[str, Lineage] = {}
        self._lock = threading.Lock()

    def get(self, lineage_id: str) -> Optional[Lineage]:
        with self._lock:
            return self._lineages.get(lineage_id)

    def start_lineage(self, script: str) -> Lineage:
        first = Version(id=uuid.uuid4().hex, number=1, script=script, is_latest=True)
        lineage = Lineage(id=uuid.uuid4().hex, versions=(first,))
        with self._lock:
            self._lineages[lineage.id] = lineage
        logger.debug("Started lineage %s", lineage.id)
        return lineage

    def append_version(
        self, lineage_id: str, script: str, parent_version_id: Optional[str] = None
    ) -> Optional[Lineage]:
        """Add version N+1 as the new latest. Unknown lineage: nothing changes, returns None."""
        with self._lock:
            lineage = self._lineages.get(lineage_id)
            if lineage is None:
                logger.error("append_version: unknown lineage %s", lineage_id)
                return None
            if parent_version_id is None and lineage.latest is not None:
                parent_version_id = lineage.latest.id
            demoted = tuple(replace(v, is_latest=False) for v in lineage.versions)
            new = Version(
                id=uuid.uuid4().hex,
                number=lineage.latest_version_number + 1,
                script=script,
                parent_version_id=parent_version_id,
                is_latest=True,
            )
            lineage = replace(lineage, versions=demoted + (new,))
            self._lineages[lineage_id] = lineage
            return lineage

    def apply_result(
        self, lineage_id: str, version_id: str, result: JobResult
    ) -> Optional[Lineage]:
        """Attach ``result`` to the version with ``version_id``.

        Unknown lineage or version ids are logged and the result dropped.
        Returns the (possibly unchanged) lineage, or None if unknown.
        """
        with self._lock:
            lineage = self._lineages.get(lineage_id)
            if lineage is None:
                logger.error("Dropping result for unknown lineage %s", lineage_id)
                return None
            target = lineage.version(version_id)
            if target is None:
                logger.error("Dropping result for unknown version %s in lineage %s",
                             version_id, lineage_id)
                return lineage
            if target.result == result:
                logger.debug("Duplicate result for version %s ignored", version_id)
                return lineage
            if not target.is_latest:
                logger.info("Result for version %d arrived after version %d was appended",
                            target.number, lineage.latest_version_number)
            updated = _settle(target, result)
            lineage = replace(
                lineage,
                versions=tuple(updated if v.id == version_id else v for v in lineage.versions),
            )
            self._lineages[lineage_id] = lineage
            return lineage

    def abandon(self, lineage_id: str) -> bool:
        with self._lock:
            removed = self._lineages.pop(lineage_id, None)
        if removed is None:
            logger.warning("abandon: unknown lineage %s", lineage_id)
            return False
        return True
