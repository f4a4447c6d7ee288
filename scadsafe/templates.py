"""
Deterministic fallback templates.

When regeneration cannot produce a safe script within the attempt budget
the orchestrator falls back to one of these. Each template uses only
cube/cylinder/sphere with union/difference, no hull() and no scale(), and
clamps its dimensions so the result always passes the safety validator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from scadsafe.expression import extract_symbols

_NUMBER_RE = re.compile(r'\d+')

# Checked in order; first category with a matching keyword wins.
SHAPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("container", ("cup", "mug", "container", "holder", "pot")),
    ("cylinder", ("cylinder", "tube", "pipe")),
    ("sphere", ("ball", "sphere")),
    ("organic", ("organic", "fruit", "vase", "bottle")),
    ("box", ("box", "cube", "case")),
]
DEFAULT_SHAPE = "box"

WALL_THICKNESS = 3
MIN_SIZE = 10.0
MAX_RADIUS = 80.0
MAX_HEIGHT = 200.0
MAX_SPAN = 400.0


@dataclass
class SizeHints:
    """Requested dimensions in millimetres; any may be left unset."""
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    radius: Optional[float] = None


@dataclass
class Intent:
    description: str
    shape: str
    width: float = 50.0
    height: float = 50.0
    depth: float = 50.0
    radius: float = 25.0


@dataclass
class Template:
    """A ready-to-compile fallback script."""
    name: str
    script: str
    parameters: dict[str, float] = field(default_factory=dict)
    reasoning: str = ""


def shape_for(description: str) -> str:
    lower = (description or "").lower()
    for shape, keywords in SHAPE_KEYWORDS:
        if any(word in lower for word in keywords):
            return shape
    return DEFAULT_SHAPE


def parse_intent(description: str, hints: Optional[SizeHints] = None) -> Intent:
    """Pick a shape and dimensions from a free-text description.

    The first number strictly between 10 and 200 sets the height; width
    and depth follow at 0.8x and radius at 0.5x. Explicit hints win over
    anything read from the text.
    """
    intent = Intent(description=description or "", shape=shape_for(description))
    numbers = _NUMBER_RE.findall(description or "")
    if numbers:
        first = int(numbers[0])
        if 10 < first < 200:
            intent.height = float(first)
            intent.width = first * 0.8
            intent.depth = first * 0.8
            intent.radius = first * 0.5

    if hints is not None:
        for name in ("width", "height", "depth", "radius"):
            value = getattr(hints, name)
            if value is not None:
                setattr(intent, name, float(value))

    intent.width = _clamp(intent.width, MIN_SIZE, MAX_SPAN)
    intent.depth = _clamp(intent.depth, MIN_SIZE, MAX_SPAN)
    intent.height = _clamp(intent.height, MIN_SIZE, MAX_HEIGHT)
    intent.radius = _clamp(intent.radius, MIN_SIZE, MAX_RADIUS)
    return intent


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _num(value: float) -> str:
    return f"{round(value, 2):g}"


# ── Templates ─────────────────────────────────────────────────────────


def _box(d: Intent) -> str:
    return f"""// Fallback box
width = {_num(d.width)};
height = {_num(d.height)};
depth = {_num(d.depth)};
wall_thickness = {WALL_THICKNESS};

difference() {{
  cube([width, depth, height]);
  translate([wall_thickness, wall_thickness, wall_thickness])
  cube([width - 2*wall_thickness, depth - 2*wall_thickness, height]);
}}
"""


def _cylinder(d: Intent) -> str:
    return f"""// Fallback cylinder
radius = {_num(d.radius)};
height = {_num(d.height)};
wall_thickness = {WALL_THICKNESS};

difference() {{
  cylinder(h=height, r=radius, $fn=64);
  translate([0, 0, wall_thickness])
  cylinder(h=height, r=radius - wall_thickness, $fn=64);
}}
"""


def _sphere(d: Intent) -> str:
    return f"""// Fallback sphere
radius = {_num(d.radius)};

sphere(r=radius, $fn=64);
"""


def _container(d: Intent) -> str:
    return f"""// Fallback container (cup/mug)
radius = {_num(d.radius)};
height = {_num(d.height)};
wall_thickness = {WALL_THICKNESS};
handle_width = 10;
handle_thickness = 4;

union() {{
  difference() {{
    cylinder(h=height, r=radius, $fn=64);
    translate([0, 0, wall_thickness])
    cylinder(h=height, r=radius - wall_thickness, $fn=64);
  }}

  translate([radius - 2, -handle_width/2, height/2])
  difference() {{
    cube([handle_thickness + 10, handle_width, height/3]);
    translate([handle_thickness, handle_thickness, -1])
    cube([10, handle_width - 2*handle_thickness, height/3 + 2]);
  }}
}}
"""


def _organic(d: Intent) -> str:
    # The middle sphere must leave room for the lower connecting cylinder.
    body_radius = min(d.radius, d.height * 0.3)
    return f"""// Fallback organic shape: stacked spheres
body_radius = {_num(body_radius)};
body_height = {_num(d.height)};
top_radius = body_radius * 0.7;
bottom_radius = body_radius * 0.5;

union() {{
  translate([0, 0, bottom_radius])
  sphere(r=bottom_radius, $fn=64);

  translate([0, 0, body_height * 0.4])
  sphere(r=body_radius, $fn=64);

  translate([0, 0, body_height * 0.85])
  sphere(r=top_radius, $fn=64);

  translate([0, 0, bottom_radius])
  cylinder(h=body_height * 0.4 - bottom_radius, r1=bottom_radius * 0.9, r2=body_radius * 0.9, $fn=64);

  translate([0, 0, body_height * 0.4])
  cylinder(h=body_height * 0.45, r1=body_radius * 0.9, r2=top_radius * 0.9, $fn=64);
}}
"""


class TemplateCatalog:
    """Keyword-selected fallback scripts."""

    GENERATORS: dict[str, Callable[[Intent], str]] = {
        "box": _box,
        "cylinder": _cylinder,
        "sphere": _sphere,
        "container": _container,
        "organic": _organic,
    }

    def names(self) -> list[str]:
        return list(self.GENERATORS)

    def build(self, shape: str, intent: Intent) -> Template:
        script = self.GENERATORS[shape](intent)
        return Template(
            name=shape,
            script=script,
            parameters=extract_symbols(script),
            reasoning=(f"Using fallback template ({shape}): plain cube/cylinder/sphere "
                       f"geometry with no hull() or scale()."),
        )

    def select(self, description: str, hints: Optional[SizeHints] = None) -> Template:
        intent = parse_intent(description, hints)
        return self.build(intent.shape, intent)
