"""
Tests for design sessions: background compiles routed back to versions.
"""

import threading

import pytest

from scadsafe.compiler import MockRuntime
from scadsafe.config import OrchestratorConfig, SandboxConfig
from scadsafe.core import JobReport, Orchestrator, Success
from scadsafe.libraries import LibraryCache
from scadsafe.lineage import VersionStatus
from scadsafe.sandbox import SandboxEngine
from scadsafe.session import DesignSession


class GatedOrchestrator:
    """Finishes each job only when the gate for its script is opened."""

    def __init__(self):
        self.gates = {}
        self.started = {}

    def gate(self, script):
        self.started.setdefault(script, threading.Event())
        return self.gates.setdefault(script, threading.Event())

    def run(self, job, on_event=None):
        gate = self.gate(job.script)
        self.started[job.script].set()
        assert gate.wait(5), "gate never opened"
        if on_event:
            on_event("success", {"job_id": job.id, "attempt": 1, "progress": 100, "error": None})
        result = Success(artifact=job.script.encode())
        return JobReport(job_id=job.id, result=result, attempts=1, final_script=job.script)


class ExplodingOrchestrator:
    def run(self, job, on_event=None):
        raise RuntimeError("orchestrator bug")


@pytest.fixture
def gated():
    return GatedOrchestrator()


# ── Routing ───────────────────────────────────────────────────────────


class TestRouting:
    def test_results_land_on_their_versions_in_any_order(self, gated):
        with DesignSession(gated) as session:
            first = session.start("cube(1);")
            second = session.refine("cube(2);")
            v1, v2 = session.lineage.versions

            gated.gate("cube(2);").set()
            second.result(timeout=5)
            assert session.lineage.version(v2.id).artifact == b"cube(2);"
            assert session.lineage.version(v1.id).status is VersionStatus.PENDING

            gated.gate("cube(1);").set()
            first.result(timeout=5)
            lineage = session.lineage
            assert lineage.version(v1.id).artifact == b"cube(1);"
            assert lineage.latest.id == v2.id
            assert lineage.displayed_artifact == b"cube(2);"

    def test_refine_does_not_wait_for_pending_compile(self, gated):
        with DesignSession(gated) as session:
            session.start("cube(1);")
            assert gated.started["cube(1);"].wait(5)
            session.refine("cube(2);")
            assert session.lineage.latest_version_number == 2
            gated.gate("cube(1);").set()
            gated.gate("cube(2);").set()

    def test_refine_without_lineage_starts_one(self, gated):
        gated.gate("cube(1);").set()
        with DesignSession(gated) as session:
            session.refine("cube(1);").result(timeout=5)
            assert session.lineage.latest_version_number == 1

    def test_events_carry_version(self, gated):
        events = []
        gated.gate("cube(1);").set()
        with DesignSession(gated, on_event=lambda state, data: events.append(data)) as session:
            session.start("cube(1);").result(timeout=5)
            version_id = session.lineage.versions[0].id
        assert events[-1]["version_id"] == version_id
        assert events[-1]["lineage_id"] == session.lineage_id

    def test_restart_drops_late_results(self, gated):
        with DesignSession(gated) as session:
            future = session.start("cube(1);")
            old_id = session.lineage_id
            session.restart()
            assert session.lineage is None
            gated.gate("cube(1);").set()
            future.result(timeout=5)
            assert session.book.get(old_id) is None


class TestAnomalies:
    def test_exception_surfaces_on_future(self, caplog):
        with DesignSession(ExplodingOrchestrator()) as session:
            future = session.start("cube(1);")
            with pytest.raises(RuntimeError, match="orchestrator bug"):
                future.result(timeout=5)
            assert session.lineage.versions[0].status is VersionStatus.PENDING
        assert "Anomaly" in caplog.text


# ── With the real orchestrator ────────────────────────────────────────


class TestWithSandbox:
    def test_refinement_chain(self):
        engine = SandboxEngine(
            SandboxConfig(timeout=5.0, libraries={}),
            runtime_factory=MockRuntime,
            library_cache=LibraryCache(lambda name: b""),
        )
        orchestrator = Orchestrator(engine, config=OrchestratorConfig(compile_templates=False))
        with DesignSession(orchestrator) as session:
            futures = [
                session.start("cube(10);"),
                session.refine("scale([1, 1, 2/1]) cube(10);"),
                session.refine("cylinder(h=10, r=5);"),
            ]
            for future in futures:
                future.result(timeout=10)
            statuses = [v.status for v in session.lineage.versions]
        assert statuses == [VersionStatus.COMPILED, VersionStatus.FAILED, VersionStatus.COMPILED]
