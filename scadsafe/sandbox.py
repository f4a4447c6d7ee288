"""
Sandboxed compilation: fresh compiler instance, staged files, watchdog.

The compiler is fault-prone in ways a normal subprocess wrapper does not
cover: an instance that has run once may be left in a corrupt state, a
compile can block far longer than any reasonable request, and a hard crash
gives no error output at all. This module contains all of that so the
orchestrator only ever sees a ``CompileOutcome``.

Policy:

1. Every compiler invocation runs in a brand-new runtime instance; the
   previous one is disposed first.
2. The script and any referenced libraries are staged into the instance
   before the call.
3. A watchdog races the blocking call. On overrun the instance is killed
   out-of-band and the outcome is classified TIMEOUT.
4. "not a 3D object" results are retried once as an SVG export.
5. No exception raised by a runtime leaves this module.

Usage:
    engine = SandboxEngine(config.sandbox)
    with engine.open(job_id) as handle:
        outcome = handle.compile(script, {"radius": 10}, file_type="stl")
"""

from __future__ import annotations

import logging
import threading
import time
import zipfile
from typing import Callable, Mapping, Optional

from scadsafe.compiler import (
    NOT_3D_MESSAGE, CompileOutcome, CompilerRuntime, FailureKind, OpenSCADRuntime,
    RunOutput, RuntimeFault, ScadSafeError, format_defines,
)
from scadsafe.config import SandboxConfig
from scadsafe.libraries import LibraryCache, LibraryFetchError, detect_libraries, shared_cache, unpack_library

logger = logging.getLogger(__name__)

INPUT_FILE = "input.scad"

SANDBOX_FAULT_EXPLANATION = [
    "Compiler instance failed without error output.",
    "This usually indicates:",
    "  - Invalid hull geometry (overlapping spheres)",
    "  - Invalid linear_extrude or polygon operations",
    "  - Extrusion with center=true causing coordinate issues",
    "  - Non-manifold geometry from rotate + linear_extrude",
    "  - Complex transformations causing numerical instability",
    "  - Out of memory in the compiler instance",
    "",
    "Common fixes:",
    "  - Use cube() instead of linear_extrude for roofs",
    "  - Set center=false in extrusion operations",
    "  - Simplify polygon point counts (max 12 points)",
    "  - Avoid rotate() + linear_extrude(center=true) combination",
]

RuntimeFactory = Callable[[], CompilerRuntime]


def export_format(file_type: str) -> str:
    return "binstl" if file_type == "stl" else file_type


class SandboxHandle:
    """
    One job's claim on the sandbox.

    Owns at most one runtime instance at a time and replaces it before
    every invocation. Close it (or use it as a context manager) when the
    job is finished.
    """

    def __init__(self, engine: SandboxEngine, job_id: str):
        self.engine = engine
        self.job_id = job_id
        self.closed = False
        self.instances_created = 0
        self._runtime: Optional[CompilerRuntime] = None
        self._staged: set[str] = set()
        self._runtime_lock = threading.Lock()

    def __enter__(self) -> SandboxHandle:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Public ────────────────────────────────────────────────────

    def compile(
        self,
        script: str,
        parameters: Optional[Mapping[str, object]] = None,
        file_type: str = "stl",
    ) -> CompileOutcome:
        """Compile ``script`` and return the outcome. Never raises for compiler faults."""
        if self.closed:
            raise ScadSafeError(f"Sandbox handle for job {self.job_id} is closed")

        with self.engine.exclusive():
            outcome = self._export(script, parameters, file_type)
            if outcome.success or NOT_3D_MESSAGE not in outcome.stderr:
                return outcome

            logger.info("Job %s: result is not 3D, retrying as SVG export", self.job_id)
            flat = self._export(script, parameters, "svg")
            if flat.success:
                return flat
            outcome.stdout = "\n".join(p for p in (outcome.stdout, flat.stdout) if p)
            outcome.stderr = "\n".join(p for p in (outcome.stderr, flat.stderr) if p)
            outcome.errors.extend(flat.errors)
            outcome.warnings.extend(flat.warnings)
            return outcome

    def terminate(self) -> None:
        """Kill the current instance from any thread."""
        with self._runtime_lock:
            runtime = self._runtime
        if runtime is not None:
            logger.warning("Job %s: terminating compiler instance", self.job_id)
            runtime.kill()

    def close(self) -> None:
        if self.closed:
            return
        self._dispose_runtime()
        self.closed = True

    # ── Instance lifecycle ────────────────────────────────────────

    def _spawn(self) -> CompilerRuntime:
        self._dispose_runtime()
        runtime = self.engine.runtime_factory()
        with self._runtime_lock:
            self._runtime = runtime
        self._staged = set()
        self.instances_created += 1
        return runtime

    def _dispose_runtime(self) -> None:
        with self._runtime_lock:
            runtime, self._runtime = self._runtime, None
        if runtime is not None:
            runtime.dispose()

    def _stage_libraries(self, runtime: CompilerRuntime, script: str) -> None:
        catalog = self.engine.config.libraries
        for name in detect_libraries(script, known=catalog):
            if name in self._staged:
                continue
            try:
                archive = self.engine.library_cache.get(name)
                count = unpack_library(archive, runtime.library_dir / name)
            except (LibraryFetchError, zipfile.BadZipFile, OSError) as e:
                logger.warning("Library %s not staged: %s", name, e)
                continue
            logger.debug("Staged library %s (%d files)", name, count)
            self._staged.add(name)

    # ── Invocation ────────────────────────────────────────────────

    def _export(
        self, script: str, parameters: Optional[Mapping[str, object]], file_type: str
    ) -> CompileOutcome:
        output_file = f"output.{file_type}"
        args = [
            INPUT_FILE, "-o", output_file,
            *format_defines(parameters),
            f"--export-format={export_format(file_type)}",
            *self.engine.config.export_flags,
        ]
        try:
            runtime = self._spawn()
            runtime.write_file(INPUT_FILE, script.encode("utf-8"))
            self._stage_libraries(runtime, script)
        except (ScadSafeError, OSError) as e:
            logger.error("Job %s: could not prepare compiler instance: %s", self.job_id, e)
            return _fault(file_type, f"Could not prepare compiler instance: {e}")

        timeout = self.engine.config.timeout
        logger.info("Job %s: compiling %s (%d chars)", self.job_id, file_type, len(script))
        start = time.monotonic()
        result, error = self._run_with_watchdog(runtime, args, timeout)
        duration = time.monotonic() - start

        if result is None and error is None:
            logger.warning("Job %s: compile exceeded %.0fs, instance killed", self.job_id, timeout)
            return CompileOutcome(
                success=False, file_type=file_type, exit_code=-1,
                failure_kind=FailureKind.TIMEOUT, duration=duration,
                message=(f"Compilation timed out after {timeout:g}s: model is too "
                         f"complex. Try simplifying the design or reducing the "
                         f"number of operations."),
            )
        if error is not None:
            return self._classify_fault(error, file_type, duration, timeout)

        logger.info("Job %s: compiler exited %d in %.2fs", self.job_id, result.exit_code, duration)
        if result.exit_code != 0:
            return CompileOutcome(
                success=False, file_type=file_type,
                stdout=result.stdout, stderr=result.stderr,
                exit_code=result.exit_code, failure_kind=FailureKind.NON_ZERO_EXIT,
                duration=duration, message="Compilation failed",
            )

        artifact = runtime.read_file(output_file)
        if not artifact:
            reason = "Cannot read generated file" if artifact is None else "Compiler produced an empty file"
            return CompileOutcome(
                success=False, file_type=file_type,
                stdout=result.stdout, stderr=result.stderr,
                failure_kind=FailureKind.RUNTIME_FAULT, duration=duration, message=reason,
            )
        return CompileOutcome(
            success=True, artifact=artifact, file_type=file_type,
            stdout=result.stdout, stderr=result.stderr, duration=duration,
        )

    def _run_with_watchdog(
        self, runtime: CompilerRuntime, args: list[str], timeout: float
    ) -> tuple[Optional[RunOutput], Optional[BaseException]]:
        """Run ``call_main`` on a worker thread. (None, None) means timed out."""
        box: dict = {}

        def target():
            try:
                box["result"] = runtime.call_main(args)
            except Exception as e:
                box["error"] = e

        worker = threading.Thread(
            target=target, name=f"scadsafe-compile-{self.job_id}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            runtime.kill()
            worker.join(self.engine.kill_grace)
            return None, None
        return box.get("result"), box.get("error")

    def _classify_fault(
        self, error: BaseException, file_type: str, duration: float, timeout: float
    ) -> CompileOutcome:
        stdout = getattr(error, "stdout", "") or ""
        stderr = getattr(error, "stderr", "") or ""
        if duration > timeout:
            logger.warning("Job %s: compiler died after %.1fs, past the deadline", self.job_id, duration)
            return CompileOutcome(
                success=False, file_type=file_type, stdout=stdout, stderr=stderr,
                exit_code=-1, failure_kind=FailureKind.TIMEOUT, duration=duration,
                message=(f"Compilation timed out after {timeout:g}s: model is too "
                         f"complex. Try simplifying the design."),
            )

        if not isinstance(error, RuntimeFault):
            logger.error("Job %s: unexpected error from compiler runtime: %r", self.job_id, error)
        else:
            logger.warning("Job %s: compiler instance faulted: %s", self.job_id, error)
        if not stderr.strip():
            stderr = "\n".join(SANDBOX_FAULT_EXPLANATION)
        return CompileOutcome(
            success=False, file_type=file_type, stdout=stdout, stderr=stderr,
            exit_code=-1, failure_kind=FailureKind.RUNTIME_FAULT, duration=duration,
            message=f"Compiler instance crashed: {error}",
        )


def _fault(file_type: str, message: str) -> CompileOutcome:
    return CompileOutcome(
        success=False, file_type=file_type, exit_code=-1,
        failure_kind=FailureKind.RUNTIME_FAULT, message=message,
        stderr="\n".join(SANDBOX_FAULT_EXPLANATION),
    )


class SandboxEngine:
    """
    Hands out SandboxHandles and serialises compiles.

    Only one compile is in flight at a time across all handles; jobs that
    need real parallelism need separate engines.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
        library_cache: Optional[LibraryCache] = None,
        kill_grace: float = 5.0,
    ):
        self.config = config or SandboxConfig()
        self.runtime_factory = runtime_factory or (
            lambda: OpenSCADRuntime(self.config.compiler_path))
        self.library_cache = library_cache or shared_cache(
            self.config.libraries, self.config.fetch_timeout)
        self.kill_grace = kill_grace
        self._compile_lock = threading.Lock()

    def open(self, job_id: str) -> SandboxHandle:
        return SandboxHandle(self, job_id)

    def exclusive(self) -> threading.Lock:
        return self._compile_lock

    def compile(
        self,
        script: str,
        parameters: Optional[Mapping[str, object]] = None,
        file_type: str = "stl",
        job_id: str = "adhoc",
    ) -> CompileOutcome:
        """One-shot compile through a throwaway handle."""
        with self.open(job_id) as handle:
            return handle.compile(script, parameters, file_type)
