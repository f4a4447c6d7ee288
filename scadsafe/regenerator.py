"""
Regeneration collaborator: ask an LLM to repair a failed script.

The orchestrator treats this as unreliable. ``LLMRegenerator.regenerate``
returns the repaired script or ``None``; it never raises, so a transport
failure simply costs one attempt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from scadsafe.llm import Message

logger = logging.getLogger(__name__)

REGENERATION_SYSTEM_PROMPT = """\
You are an expert OpenSCAD code repair specialist. Your task is to fix broken OpenSCAD code.

You will receive:
1. OpenSCAD code that FAILED validation or compilation
2. The specific error message
3. Diagnostic output from the compiler (if available)

Your task:
1. Analyze the error carefully and find the root cause
2. Fix the specific issue; do not rewrite the design from scratch
3. Make sure the fix follows every safety rule below
4. Return the corrected OpenSCAD code

## CRITICAL SAFETY RULES

SCALE() OPERATIONS:
- NEVER use expressions in scale(): scale([1, 1, h/r]) crashes the compiler
- ONLY use literal numbers: scale([1, 1, 1.5]) is safe
- Keep scale ratios under 5:1
- Minimum scale factor is 0.7

HULL() OPERATIONS:
- Keep spheres in hull() well separated (distance at least 1.5x the sum of radii)
- At most 6 hull() operations per design
- NEVER use overlapping spheres

LINEAR_EXTRUDE:
- NEVER combine linear_extrude(center=true) with rotate()
- Keep polygons to 12 points or fewer
- For roofs and pitched structures use rotated cubes instead

PARAMETER LIMITS:
- Sphere radius <= 80
- Height <= 200
- All dimensions must be positive

## OUTPUT FORMAT
Return ONLY the corrected OpenSCAD code. No explanations, no markdown code fences.
"""

_FENCE_RE = re.compile(r'```[a-zA-Z]*\n?')
_CODE_START_RE = re.compile(
    r'^\s*(?://.*|[A-Za-z_$]\w*\s*=|module\b|function\b|use\b|include\b|cube\b|sphere\b'
    r'|cylinder\b|union\b|difference\b|intersection\b|translate\b|rotate\b|scale\b|hull\b'
    r'|linear_extrude\b|rotate_extrude\b)'
)


@dataclass
class RegenerationRequest:
    """What the repair model gets to see."""
    original_script: str
    error_message: str
    diagnostic_lines: list[str] = field(default_factory=list)
    description: str = ""


class Regenerator(Protocol):
    def regenerate(self, request: RegenerationRequest) -> Optional[str]: ...


def extract_code(text: str) -> str:
    """Strip markdown fences and any leading prose from an LLM reply."""
    cleaned = _FENCE_RE.sub("", text or "")
    lines = cleaned.splitlines()
    for i, line in enumerate(lines):
        if _CODE_START_RE.match(line):
            return "\n".join(lines[i:]).strip()
    return cleaned.strip()


def build_messages(request: RegenerationRequest) -> list[Message]:
    parts = [f"The previous code FAILED with this error:\n{request.error_message}"]
    if request.diagnostic_lines:
        parts.append("Compiler diagnostics:\n" + "\n".join(request.diagnostic_lines))
    if request.description:
        parts.append(f"Original user request: {request.description}")
    parts.append(f"Failed code:\n{request.original_script}")
    parts.append("Your task: fix this code so it compiles. Focus on the specific error.")
    return [
        Message(role="system", content=REGENERATION_SYSTEM_PROMPT),
        Message(role="user", content="\n\n".join(parts)),
    ]


class LLMRegenerator:
    """
    Regeneration through any object with ``generate(messages)``.

    Usage:
        regen = LLMRegenerator(LLMAdapter(config.llm))
        fixed = regen.regenerate(RegenerationRequest(script, str(violation)))
    """

    def __init__(self, llm):
        self.llm = llm

    def regenerate(self, request: RegenerationRequest) -> Optional[str]:
        try:
            raw_response = self.llm.generate(build_messages(request))
        except Exception as e:
            logger.warning("Regeneration unavailable: %s", e)
            return None

        # Handle both plain strings and LLMResponse objects
        if isinstance(raw_response, str):
            response = raw_response
        elif hasattr(raw_response, "content"):
            response = raw_response.content
        else:
            response = str(raw_response)

        code = extract_code(response)
        if not code:
            logger.warning("Regeneration returned no code")
            return None
        return code
