"""
Design session: background compiles feeding a version lineage.

Submitting a refinement never waits for earlier compiles. Each job is
bound to the Version it was created for, and its result is routed back
to that Version when the job finishes, in whatever order jobs finish.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Mapping, Optional

from scadsafe.core import EventCallback, Job, JobReport, Orchestrator
from scadsafe.lineage import Lineage, LineageBook
from scadsafe.templates import SizeHints

logger = logging.getLogger(__name__)


class DesignSession:
    """
    One design and its refinements.

    Usage:
        with DesignSession(orchestrator) as session:
            session.start(script, parameters={"radius": 10})
            future = session.refine(new_script)
            future.result()
            print(session.lineage.displayed_artifact)
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        book: Optional[LineageBook] = None,
        max_workers: int = 2,
        on_event: Optional[EventCallback] = None,
    ):
        self.orchestrator = orchestrator
        self.book = book or LineageBook()
        self.on_event = on_event or (lambda *a: None)
        self.lineage_id: Optional[str] = None
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="scadsafe-job")
        self._append_lock = threading.Lock()

    def __enter__(self) -> DesignSession:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def lineage(self) -> Optional[Lineage]:
        return self.book.get(self.lineage_id) if self.lineage_id else None

    def start(
        self,
        script: str,
        parameters: Optional[Mapping[str, object]] = None,
        description: str = "",
        file_type: str = "stl",
        size_hints: Optional[SizeHints] = None,
    ) -> Future:
        """Begin a new lineage with ``script`` as version 1 and compile it."""
        lineage = self.book.start_lineage(script)
        self.lineage_id = lineage.id
        job = Job.create(script, file_type, parameters, description, size_hints)
        return self._submit(lineage.id, lineage.versions[0].id, job)

    def refine(
        self,
        script: str,
        parameters: Optional[Mapping[str, object]] = None,
        description: str = "",
        file_type: str = "stl",
        size_hints: Optional[SizeHints] = None,
    ) -> Future:
        """Append the next version and compile it in the background."""
        if self.lineage_id is None:
            return self.start(script, parameters, description, file_type, size_hints)
        with self._append_lock:
            lineage = self.book.append_version(self.lineage_id, script)
        if lineage is None:
            raise KeyError(f"Lineage {self.lineage_id} no longer exists")
        job = Job.create(script, file_type, parameters, description, size_hints)
        return self._submit(lineage.id, lineage.versions[-1].id, job)

    def restart(self) -> None:
        """Abandon the current lineage. Late results for it are dropped."""
        if self.lineage_id is not None:
            self.book.abandon(self.lineage_id)
        self.lineage_id = None

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ── Internals ─────────────────────────────────────────────────

    def _submit(self, lineage_id: str, version_id: str, job: Job) -> Future:
        """Run ``job`` on the pool; the future resolves after its result is applied."""
        def observer(state: str, data: dict) -> None:
            self.on_event(state, {**data, "lineage_id": lineage_id, "version_id": version_id})

        def task() -> JobReport:
            try:
                report = self.orchestrator.run(job, observer)
            except Exception:
                logger.exception("Anomaly: job %s for version %s raised; result not applied",
                                 job.id, version_id)
                raise
            self.book.apply_result(lineage_id, version_id, report.result)
            return report

        return self._executor.submit(task)
