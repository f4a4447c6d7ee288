"""
Compiler runtimes: the processes that actually turn a script into geometry.

A runtime is one isolated compiler instance with its own working directory.
It is cheap to throw away and unsafe to trust after it has run once, so the
sandbox never reuses one across compiles (see ``scadsafe.sandbox``).

Two implementations:

- ``OpenSCADRuntime`` runs the ``openscad`` binary in a temp directory.
- ``MockRuntime`` fakes the compiler for tests and ``--mock`` runs.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

NOT_3D_MESSAGE = "Current top level object is not a 3D object."


class ScadSafeError(Exception):
    """Base class for scadsafe errors."""


class RuntimeFault(ScadSafeError):
    """The compiler instance itself died (signal, missing binary, ...)."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class FailureKind(Enum):
    NON_ZERO_EXIT = "non_zero_exit"
    RUNTIME_FAULT = "runtime_fault"
    TIMEOUT       = "timeout"


@dataclass
class RunOutput:
    """What one ``call_main`` invocation produced."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@dataclass
class CompileOutcome:
    """Result of compiling one script inside the sandbox."""
    success: bool
    artifact: bytes = b""
    file_type: str = "stl"
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    duration: float = 0.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.stderr and not self.errors and not self.warnings:
            self._parse_log()

    def _parse_log(self):
        """Extract structured error/warning lines from stderr."""
        for line in self.stderr.splitlines():
            line_stripped = line.strip()
            if not line_stripped:
                continue
            lower = line_stripped.lower()
            if "error" in lower:
                self.errors.append(line_stripped)
            elif "warning" in lower:
                self.warnings.append(line_stripped)

    @property
    def log(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def diagnostic_lines(self) -> list[str]:
        lines = [self.message] if self.message else []
        lines.extend(line for line in self.stderr.splitlines() if line.strip())
        return lines


def format_define(name: str, value: object) -> str:
    """Render one bound parameter as a compiler ``-D`` flag."""
    return f"-D{name}={format_value(value)}"


def format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(format_value(item) for item in value) + "]"
    return str(value)


def _quote(text: str) -> str:
    escaped = "".join("\\" + ch if ch in "\"'$`\\" else ch for ch in text)
    return f'"{escaped}"'


def format_defines(parameters: Optional[Mapping[str, object]]) -> list[str]:
    return [format_define(name, value) for name, value in (parameters or {}).items()]


class CompilerRuntime:
    """
    One compiler instance and its private filesystem.

    Subclasses implement ``call_main``. Paths passed to ``write_file`` and
    ``read_file`` are relative to the instance's working directory.
    """

    def __init__(self):
        self.workdir = Path(tempfile.mkdtemp(prefix="scadsafe_"))
        self.library_dir = self.workdir / "libraries"
        self.library_dir.mkdir()
        self.disposed = False

    def write_file(self, relpath: str, data: bytes) -> Path:
        path = self.workdir / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def read_file(self, relpath: str) -> Optional[bytes]:
        path = self.workdir / relpath
        if not path.is_file():
            return None
        return path.read_bytes()

    def remove_file(self, relpath: str) -> None:
        (self.workdir / relpath).unlink(missing_ok=True)

    def call_main(self, args: Sequence[str]) -> RunOutput:
        """Run the compiler synchronously. Raises RuntimeFault if the instance dies."""
        raise NotImplementedError

    def kill(self) -> None:
        """Terminate an in-flight ``call_main`` from another thread."""

    def dispose(self) -> None:
        if self.disposed:
            return
        self.kill()
        shutil.rmtree(self.workdir, ignore_errors=True)
        self.disposed = True


class OpenSCADRuntime(CompilerRuntime):
    """
    Runs the OpenSCAD binary as a child process.

    Usage:
        runtime = OpenSCADRuntime("/usr/bin/openscad")
        runtime.write_file("input.scad", b"cube(10);")
        out = runtime.call_main(["input.scad", "-o", "out.stl"])
    """

    def __init__(self, compiler_path: Optional[str]):
        super().__init__()
        self.compiler_path = compiler_path
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def call_main(self, args: Sequence[str]) -> RunOutput:
        if not self.compiler_path:
            raise RuntimeFault(
                "OpenSCAD not found. Install it or set sandbox.compiler_path in config."
            )
        env = dict(os.environ)
        env["OPENSCADPATH"] = str(self.library_dir)
        cmd = [self.compiler_path, *args]
        logger.debug("Running %s", " ".join(cmd))
        try:
            with self._lock:
                self._proc = subprocess.Popen(
                    cmd,
                    cwd=self.workdir,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            stdout, stderr = self._proc.communicate()
        except FileNotFoundError:
            raise RuntimeFault(f"OpenSCAD not found at: {self.compiler_path}")
        except OSError as e:
            raise RuntimeFault(f"Could not start OpenSCAD: {e}")

        returncode = self._proc.returncode
        if returncode < 0:
            raise RuntimeFault(
                f"OpenSCAD terminated by signal {-returncode}",
                stdout=stdout, stderr=stderr,
            )
        return RunOutput(exit_code=returncode, stdout=stdout, stderr=stderr)

    def kill(self) -> None:
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.debug("Killing OpenSCAD process %s", proc.pid)
            proc.kill()


class MockRuntime(CompilerRuntime):
    """
    Fake compiler for testing without OpenSCAD.

    Writes a small binary STL (or SVG) for any script. Behaviour switches:

        fault_on:   substrings that make the instance "crash" with empty stderr
        fail_on:    substrings that produce exit code 1 with a compiler error
        flat:       report NOT_3D_MESSAGE unless exporting SVG
        delay:      seconds to block inside call_main (interrupted by kill())
    """

    STL_HEADER = b"scadsafe mock binary stl".ljust(80, b"\0")

    def __init__(
        self,
        fault_on: Sequence[str] = (),
        fail_on: Sequence[str] = (),
        flat: bool = False,
        delay: float = 0.0,
    ):
        super().__init__()
        self.fault_on = tuple(fault_on)
        self.fail_on = tuple(fail_on)
        self.flat = flat
        self.delay = delay
        self.calls: list[list[str]] = []
        self._killed = threading.Event()

    def call_main(self, args: Sequence[str]) -> RunOutput:
        args = list(args)
        self.calls.append(args)
        script = (self.read_file(args[0]) or b"").decode("utf-8", errors="replace")
        output = args[args.index("-o") + 1]

        if self.delay and self._killed.wait(self.delay):
            raise RuntimeFault("mock compiler killed")
        if self._killed.is_set():
            raise RuntimeFault("mock compiler killed")

        for marker in self.fault_on:
            if marker in script:
                raise RuntimeFault("mock compiler crashed")
        for marker in self.fail_on:
            if marker in script:
                return RunOutput(
                    exit_code=1,
                    stderr=f"ERROR: Parser error: unexpected '{marker}' in file input.scad",
                )

        if "--export-format=svg" in args:
            self.write_file(output, b'<svg xmlns="http://www.w3.org/2000/svg"></svg>')
            return RunOutput(exit_code=0, stdout="Geometries in cache: 1")
        if self.flat:
            return RunOutput(exit_code=1, stderr=f"ERROR: {NOT_3D_MESSAGE}")

        self.write_file(output, self.STL_HEADER + (1).to_bytes(4, "little") + b"\0" * 50)
        return RunOutput(
            exit_code=0,
            stdout="Rendering Polygon Mesh using Manifold...",
        )

    def kill(self) -> None:
        self._killed.set()
