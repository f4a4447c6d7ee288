"""
scadsafe core: drive one compilation job to a terminal result.

Each job runs through an explicit state machine:

    PENDING → VALIDATING → COMPILING → SUCCESS
                  │            │
                  ▼            ▼
        VALIDATION_FAILED  COMPILE_FAILED
                  └─────┬──────┘
                        ▼
          REQUESTING_REGENERATION → VALIDATING (new script)
                        │
                        ▼
                    EXHAUSTED → TEMPLATE_FALLBACK

Regeneration always starts from the job's original script plus the latest
diagnostic, never from a previous repair. A job ends in SUCCESS or
TEMPLATE_FALLBACK; both are terminal successes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Mapping, Optional, Union

from scadsafe.compiler import CompileOutcome, FailureKind
from scadsafe.config import OrchestratorConfig
from scadsafe.regenerator import RegenerationRequest, Regenerator
from scadsafe.sandbox import SandboxEngine, SandboxHandle
from scadsafe.templates import SizeHints, TemplateCatalog
from scadsafe.validator import SafetyValidator, Violation

logger = logging.getLogger(__name__)


class FileType(Enum):
    STL = "stl"
    OFF = "off"
    AMF = "amf"
    THREE_MF = "3mf"
    SVG = "svg"
    DXF = "dxf"


@dataclass(frozen=True)
class Job:
    """One user-visible compilation request; attempts share id and original_script."""
    id: str
    script: str
    file_type: str = FileType.STL.value
    parameters: Mapping[str, object] = field(default_factory=dict)
    attempt: int = 1
    original_script: str = ""
    description: str = ""
    size_hints: Optional[SizeHints] = None

    def __post_init__(self):
        if not self.original_script:
            object.__setattr__(self, "original_script", self.script)

    @classmethod
    def create(
        cls,
        script: str,
        file_type: Union[str, FileType] = FileType.STL,
        parameters: Optional[Mapping[str, object]] = None,
        description: str = "",
        size_hints: Optional[SizeHints] = None,
    ) -> Job:
        return cls(
            id=uuid.uuid4().hex,
            script=script,
            file_type=FileType(file_type).value,
            parameters=dict(parameters or {}),
            description=description,
            size_hints=size_hints,
        )

    def next_attempt(self, script: str, attempt: Optional[int] = None) -> Job:
        return replace(
            self,
            script=script,
            attempt=self.attempt + 1 if attempt is None else attempt,
        )


# ── Results ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Success:
    artifact: bytes
    log: str = ""
    file_type: str = FileType.STL.value


@dataclass(frozen=True)
class ValidationFailed:
    violation: Violation


@dataclass(frozen=True)
class CompileFailed:
    kind: FailureKind
    log: str = ""
    message: str = ""


@dataclass(frozen=True)
class TemplateFallback:
    """Deterministic replacement script; ``artifact`` is None if it was not compiled."""
    script: str
    template_name: str
    artifact: Optional[bytes] = None
    log: str = ""
    file_type: str = FileType.STL.value


JobResult = Union[Success, ValidationFailed, CompileFailed, TemplateFallback]


def describe_failure(result: JobResult) -> tuple[str, list[str]]:
    """Error message and diagnostic lines for a failed attempt."""
    if isinstance(result, ValidationFailed):
        return result.violation.message, result.violation.log_lines()
    if isinstance(result, CompileFailed):
        lines = [line for line in result.log.splitlines() if line.strip()]
        return result.message or result.kind.value, lines
    return "", []


@dataclass
class AttemptRecord:
    attempt: int
    script: str
    result: JobResult


@dataclass
class JobReport:
    """Terminal result of a job plus the history of its attempts."""
    job_id: str
    result: JobResult
    attempts: int
    history: list[AttemptRecord] = field(default_factory=list)
    final_script: str = ""

    @property
    def artifact(self) -> Optional[bytes]:
        return getattr(self.result, "artifact", None)

    @property
    def used_template(self) -> bool:
        return isinstance(self.result, TemplateFallback)


# ── State machine ─────────────────────────────────────────────────────


class JobState(Enum):
    PENDING                 = "pending"
    VALIDATING              = "validating"
    COMPILING               = "compiling"
    REQUESTING_REGENERATION = "requesting_regeneration"
    SUCCESS                 = "success"
    VALIDATION_FAILED       = "validation_failed"
    COMPILE_FAILED          = "compile_failed"
    EXHAUSTED               = "exhausted"
    TEMPLATE_FALLBACK       = "template_fallback"


TERMINAL_STATES = frozenset({JobState.SUCCESS, JobState.TEMPLATE_FALLBACK})

# Progress estimate per state, in percent. Restarts at 0 on every attempt.
_PROGRESS = {
    JobState.PENDING: 0,
    JobState.VALIDATING: 0,
    JobState.COMPILING: 25,
    JobState.VALIDATION_FAILED: 100,
    JobState.COMPILE_FAILED: 100,
    JobState.REQUESTING_REGENERATION: 0,
    JobState.EXHAUSTED: 0,
    JobState.TEMPLATE_FALLBACK: 100,
    JobState.SUCCESS: 100,
}

EventCallback = Callable[[str, dict], None]


class JobRun:
    """
    Explicit state machine for one Job.

    ``attempts_used`` counts validate/compile cycles plus regenerations
    that produced nothing usable; it never exceeds ``max_attempts``.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        job: Job,
        handle: SandboxHandle,
        on_event: EventCallback,
    ):
        self.orchestrator = orchestrator
        self.job = job
        self.handle = handle
        self.on_event = on_event
        self.state = JobState.PENDING
        self.attempts_used = 0
        self.last_result: Optional[JobResult] = None
        self.result: Optional[JobResult] = None
        self.history: list[AttemptRecord] = []
        self._seen: dict[str, JobResult] = {}
        self._handlers = {
            JobState.PENDING: self._pending,
            JobState.VALIDATING: self._validating,
            JobState.COMPILING: self._compiling,
            JobState.VALIDATION_FAILED: self._failed,
            JobState.COMPILE_FAILED: self._failed,
            JobState.REQUESTING_REGENERATION: self._requesting_regeneration,
            JobState.EXHAUSTED: self._exhausted,
        }

    @property
    def max_attempts(self) -> int:
        return self.orchestrator.config.max_attempts

    def execute(self) -> JobReport:
        self._emit()
        while self.state not in TERMINAL_STATES:
            self._handlers[self.state]()
        return JobReport(
            job_id=self.job.id,
            result=self.result,
            attempts=self.attempts_used,
            history=self.history,
            final_script=(self.result.script if isinstance(self.result, TemplateFallback)
                          else self.job.script),
        )

    # ── Transitions ───────────────────────────────────────────────

    def _move(self, state: JobState, error: Optional[str] = None) -> None:
        self.state = state
        self._emit(error)

    def _emit(self, error: Optional[str] = None) -> None:
        data = {
            "job_id": self.job.id,
            "attempt": self.job.attempt,
            "progress": _PROGRESS[self.state],
            "error": error,
        }
        if self.state in TERMINAL_STATES:
            # Terminal events carry the outcome: the artifact, or why there is none.
            artifact = getattr(self.result, "artifact", None)
            data["artifact"] = artifact
            data["artifact_size"] = len(artifact) if artifact else 0
            if artifact is None and error is None:
                data["error"] = f"Template {self.result.template_name} produced no artifact"
        try:
            self.on_event(self.state.value, data)
        except Exception:
            logger.exception("Job %s: progress observer raised", self.job.id)

    def _pending(self) -> None:
        self._move(JobState.VALIDATING)

    def _validating(self) -> None:
        self.attempts_used += 1
        logger.info("Job %s: attempt %d/%d", self.job.id, self.attempts_used, self.max_attempts)

        previous = self._seen.get(self.job.script)
        if previous is not None:
            logger.info("Job %s: script identical to an earlier attempt, reusing its result",
                        self.job.id)
            self._record(previous)
            return

        violation = self.orchestrator.validator.validate(self.job.script, self.job.parameters)
        if violation is not None:
            self._record(ValidationFailed(violation))
            return
        self._move(JobState.COMPILING)

    def _compiling(self) -> None:
        outcome = self.handle.compile(self.job.script, self.job.parameters, self.job.file_type)
        if outcome.success:
            self.result = Success(
                artifact=outcome.artifact, log=outcome.log, file_type=outcome.file_type)
            self.history.append(AttemptRecord(self.job.attempt, self.job.script, self.result))
            logger.info("Job %s: compiled on attempt %d", self.job.id, self.attempts_used)
            self._move(JobState.SUCCESS)
            return
        self._record(_compile_failed(outcome))

    def _record(self, result: JobResult) -> None:
        self._seen[self.job.script] = result
        self.last_result = result
        self.history.append(AttemptRecord(self.job.attempt, self.job.script, result))
        message, _ = describe_failure(result)
        if isinstance(result, ValidationFailed):
            self._move(JobState.VALIDATION_FAILED, error=message)
        else:
            self._move(JobState.COMPILE_FAILED, error=message)

    def _failed(self) -> None:
        if self.orchestrator.regenerator is None:
            self._move(JobState.EXHAUSTED)
        elif self.attempts_used < self.max_attempts:
            self._move(JobState.REQUESTING_REGENERATION)
        else:
            self._move(JobState.EXHAUSTED)

    def _requesting_regeneration(self) -> None:
        message, lines = describe_failure(self.last_result)
        request = RegenerationRequest(
            original_script=self.job.original_script,
            error_message=message,
            diagnostic_lines=lines,
            description=self.job.description,
        )
        try:
            fixed = self.orchestrator.regenerator.regenerate(request)
        except Exception as e:
            logger.warning("Job %s: regeneration failed: %s", self.job.id, e)
            fixed = None

        if not fixed:
            self.attempts_used += 1
            logger.warning("Job %s: regeneration unavailable (attempt %d/%d consumed)",
                           self.job.id, self.attempts_used, self.max_attempts)
            if self.attempts_used >= self.max_attempts:
                self._move(JobState.EXHAUSTED, error="Regeneration unavailable")
            else:
                self._move(JobState.REQUESTING_REGENERATION, error="Regeneration unavailable")
            return

        self.job = self.job.next_attempt(fixed, attempt=self.attempts_used + 1)
        self._move(JobState.VALIDATING)

    def _exhausted(self) -> None:
        orchestrator = self.orchestrator
        template = orchestrator.catalog.select(self.job.description, self.job.size_hints)
        logger.info("Job %s: attempts exhausted, falling back to %s template",
                    self.job.id, template.name)

        violation = orchestrator.validator.validate(template.script)
        if violation is not None:
            logger.error("Template %s fails validation: %s", template.name, violation.message)

        artifact, log = None, ""
        if orchestrator.config.compile_templates:
            outcome = self.handle.compile(template.script, None, self.job.file_type)
            log = outcome.log
            if outcome.success:
                artifact = outcome.artifact
            else:
                logger.error("Job %s: template %s did not compile: %s",
                             self.job.id, template.name, outcome.message)

        self.result = TemplateFallback(
            script=template.script,
            template_name=template.name,
            artifact=artifact,
            log=log,
            file_type=self.job.file_type,
        )
        self._move(JobState.TEMPLATE_FALLBACK)


def _compile_failed(outcome: CompileOutcome) -> CompileFailed:
    return CompileFailed(
        kind=outcome.failure_kind or FailureKind.NON_ZERO_EXIT,
        log=outcome.log,
        message=outcome.message,
    )


# ── Orchestrator ──────────────────────────────────────────────────────


class Orchestrator:
    """
    Validate, compile, regenerate, fall back.

    Usage:
        orchestrator = Orchestrator(SandboxEngine(config.sandbox),
                                    regenerator=LLMRegenerator(llm))
        report = orchestrator.run(Job.create(script, parameters={"radius": 10}))
    """

    def __init__(
        self,
        engine: SandboxEngine,
        regenerator: Optional[Regenerator] = None,
        validator: Optional[SafetyValidator] = None,
        catalog: Optional[TemplateCatalog] = None,
        config: Optional[OrchestratorConfig] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.engine = engine
        self.regenerator = regenerator
        self.validator = validator or SafetyValidator()
        self.catalog = catalog or TemplateCatalog()
        self.config = config or OrchestratorConfig()
        self.on_event = on_event or (lambda *a: None)

    def run(self, job: Job, on_event: Optional[EventCallback] = None) -> JobReport:
        """Run ``job`` to a terminal result. The sandbox handle lives exactly as long as the job."""
        with self.engine.open(job.id) as handle:
            return JobRun(self, job, handle, on_event or self.on_event).execute()
