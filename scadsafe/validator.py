"""
Crash-pattern validator for generated OpenSCAD scripts.

The compiler aborts the whole process (not a catchable error) on a small,
known set of input shapes. Running it on such a script wastes the sandbox
and tells the regeneration step nothing, so every script passes through
this validator first.

Checks run in a fixed order, cheapest and most certain first, and the
first hit is returned:

1. Complexity:            syntactic call counts
2. Hull overlap:          sphere pairs inside hull() too close together
3. Difference cutters:    oversized or degenerate centred cylinders
4. Scale ratio:           division in scale(), extreme or tiny factors
5. Parameter expression:  scale() vectors with too much arithmetic
6. Parameter bounds:      dimension-like parameters out of range
7. Extrusion pattern:     rotate/centre/polygon combinations

Regexes and bracket scanning locate candidates; numbers always come from
the restricted evaluator in ``scadsafe.expression``. If a value cannot be
resolved the check is skipped for that candidate, never failed.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Mapping, Optional

from scadsafe.config import ValidatorConfig
from scadsafe.expression import (
    SymbolTable, count_operators, evaluate, extract_symbols, merge_parameters,
)
from scadsafe.scad_syntax import (
    Arguments, brace_depths, chained_call, child_text, find_calls, is_true_flag,
    parse_arguments, parse_vector, strip_comments,
)

logger = logging.getLogger(__name__)


class ViolationCategory(Enum):
    COMPLEXITY           = "complexity"
    HULL_OVERLAP         = "hull_overlap"
    SCALE_RATIO          = "scale_ratio"
    PARAMETER_EXPRESSION = "parameter_expression"
    PARAMETER_BOUNDS     = "parameter_bounds"
    EXTRUDE_PATTERN      = "extrude_pattern"


@dataclass(frozen=True)
class Violation:
    """The single reason a script was rejected."""
    category: ViolationCategory
    message: str
    suggested_fixes: tuple[str, ...] = field(default_factory=tuple)

    def log_lines(self) -> list[str]:
        """Diagnostic lines in the shape of compiler stderr."""
        lines = [self.message]
        if self.suggested_fixes:
            lines.append("")
            lines.append("Suggestion:")
            lines.extend(f"  - {fix}" for fix in self.suggested_fixes)
        return lines

    def __str__(self) -> str:
        return self.message


_FIXES = {
    ViolationCategory.COMPLEXITY: (
        "Use fewer hull() operations; combine spheres and cylinders directly",
        "Reduce the number of scale() transformations",
        "Break complex shapes into simpler components",
    ),
    ViolationCategory.HULL_OVERLAP: (
        "Keep spheres inside hull() well separated",
        "Use rotate_extrude() for organic shapes instead of complex hulls",
        "Split large hulls into several smaller hull() operations",
    ),
    "difference": (
        "Keep cutter cylinders small (h <= 100, d <= 200, r <= 100)",
        "Set center=false and position the cutter with translate()",
        "Make holes smaller than the object being cut",
    ),
    ViolationCategory.SCALE_RATIO: (
        "Use literal numbers in scale(), e.g. scale([1, 1, 1.5])",
        "Keep scale ratios under 5:1; use separate translated spheres instead",
        "Keep every scale factor at or above 0.7",
        "Reduce the sphere radius when scaling non-uniformly",
    ),
    ViolationCategory.PARAMETER_EXPRESSION: (
        "Compute scale factors beforehand as named parameters",
        "Keep scale() expressions to at most two operators",
    ),
    ViolationCategory.PARAMETER_BOUNDS: (
        "Keep sphere radii at or below 80",
        "Keep heights at or below 200",
        "Scale the whole design down proportionally",
        "Make every dimension positive",
    ),
    ViolationCategory.EXTRUDE_PATTERN: (
        "Use linear_extrude() with center=false (the default)",
        "Position the extrusion with translate() afterwards",
        "Build roofs from rotated cubes instead of extruded polygons",
        "Keep polygons to 12 points or fewer",
        "Keep extrusion height at or below 200",
    ),
}


def _violation(category: ViolationCategory, message: str, fixes_key=None) -> Violation:
    return Violation(
        category=category,
        message=message,
        suggested_fixes=_FIXES[fixes_key if fixes_key is not None else category],
    )


def _starts_statement(text: str, index: int) -> bool:
    """True when nothing but whitespace separates ``index`` from the previous statement."""
    before = text[:index].rstrip()
    return not before or before[-1] in ";}"


def _call_pattern(*names: str) -> re.Pattern:
    return re.compile(r'(?<![\w$])(?:' + "|".join(names) + r')\s*\(')


_HULL_RE = _call_pattern("hull")
_PRIMITIVE_RE = _call_pattern("sphere", "cylinder")
_SCALE_RE = _call_pattern("scale")
_BOOLEAN_RE = _call_pattern("union", "difference", "intersection")


@dataclass
class _PlacedSphere:
    x: float
    y: float
    z: float
    r: float


class SafetyValidator:
    """Validate a model script against the compiler's known crash patterns."""

    def __init__(self, config: Optional[ValidatorConfig] = None):
        self.config = config or ValidatorConfig()

    def validate(
        self,
        script: str,
        parameters: Optional[Mapping[str, object]] = None,
    ) -> Optional[Violation]:
        """Return the first Violation found, or None if the script is safe.

        ``parameters`` are bound values (compiler defines); they override
        same-named literal assignments in the script.
        """
        text = strip_comments(script or "")
        symbols = merge_parameters(extract_symbols(text), parameters)

        checks = (
            lambda: self._check_complexity(text),
            lambda: self._check_hull_overlap(text, symbols),
            lambda: self._check_difference_cutters(text, symbols),
            lambda: self._check_scale_ratio(text, symbols),
            lambda: self._check_scale_expressions(text),
            lambda: self._check_parameter_bounds(symbols),
            lambda: self._check_extrusions(text, symbols),
        )
        for check in checks:
            violation = check()
            if violation is not None:
                logger.debug("Validation failed (%s): %s",
                             violation.category.value, violation.message)
                return violation
        return None

    # ── 1. Complexity ─────────────────────────────────────────────

    def _check_complexity(self, text: str) -> Optional[Violation]:
        cfg = self.config
        hulls = len(_HULL_RE.findall(text))
        primitives = len(_PRIMITIVE_RE.findall(text))
        scales = len(_SCALE_RE.findall(text))
        booleans = len(_BOOLEAN_RE.findall(text))

        if hulls > cfg.max_hulls:
            return _violation(
                ViolationCategory.COMPLEXITY,
                f"Code complexity error: too many hull() operations ({hulls} found, "
                f"max {cfg.max_hulls}). Hull operations are expensive and can hang "
                f"or crash the compiler.",
            )
        if primitives > cfg.max_primitives:
            return _violation(
                ViolationCategory.COMPLEXITY,
                f"Code complexity error: too many primitives ({primitives} "
                f"spheres/cylinders found, max {cfg.max_primitives}).",
            )
        if hulls > 0 and scales > cfg.max_scales_with_hull:
            return _violation(
                ViolationCategory.COMPLEXITY,
                f"Code complexity error: hull() combined with {scales} scale() "
                f"operations (max {cfg.max_scales_with_hull} when hull() is used).",
            )
        if booleans > cfg.max_boolean_ops:
            return _violation(
                ViolationCategory.COMPLEXITY,
                f"Code complexity error: too many boolean operations ({booleans} "
                f"union/difference/intersection found, max {cfg.max_boolean_ops}).",
            )
        return None

    # ── 2. Hull overlap ───────────────────────────────────────────

    def _check_hull_overlap(self, text: str, symbols: SymbolTable) -> Optional[Violation]:
        if "hull" not in text:
            return None
        cfg = self.config
        for hull in find_calls(text, "hull"):
            body = child_text(text, hull.end)
            spheres = self._placed_spheres(body, symbols)
            for s1, s2 in combinations(spheres, 2):
                distance = math.dist((s1.x, s1.y, s1.z), (s2.x, s2.y, s2.z))
                radii = s1.r + s2.r
                if distance < radii * cfg.overlap_crash_factor:
                    return _violation(
                        ViolationCategory.HULL_OVERLAP,
                        f"Hull geometry error: spheres in hull() overlap (centres "
                        f"{distance:.1f} apart, radii {s1.r:.1f} + {s2.r:.1f} = "
                        f"{radii:.1f}). This crashes the compiler outright. Increase "
                        f"the separation to at least {radii * cfg.overlap_risk_factor:.1f}.",
                    )
                if distance < radii * cfg.overlap_risk_factor:
                    return _violation(
                        ViolationCategory.HULL_OVERLAP,
                        f"Hull geometry warning: spheres in hull() are too close "
                        f"(separation {distance:.1f}, recommended > "
                        f"{radii * cfg.overlap_risk_factor:.1f}). Near-coincident "
                        f"hull inputs are numerically unstable and likely to crash.",
                    )
        return None

    def _placed_spheres(self, body: str, symbols: SymbolTable) -> list[_PlacedSphere]:
        """Spheres positioned through a chain of translate() calls.

        Only chains that start a direct child of the hull body are followed.
        A translate under another transform or inside a nested block has an
        offset we do not track, so its sphere counts as unresolved.
        """
        spheres: list[_PlacedSphere] = []
        depths = brace_depths(body)
        for translate in find_calls(body, "translate"):
            if depths[translate.start] != 0 or not _starts_statement(body, translate.start):
                continue
            offset = (0.0, 0.0, 0.0)
            resolved = True
            call = translate
            while call is not None and call.name == "translate":
                vector = self._evaluate_vector(
                    parse_arguments(call.args).get("v", position=0), symbols, size=3)
                if vector is None:
                    resolved = False
                else:
                    offset = tuple(a + b for a, b in zip(offset, vector))
                call = chained_call(body, call, ("translate", "sphere"))
            if call is None or not resolved:
                continue
            radius = self._sphere_radius(parse_arguments(call.args), symbols)
            if radius is not None:
                spheres.append(_PlacedSphere(*offset, r=radius))
        return spheres

    @staticmethod
    def _sphere_radius(args: Arguments, symbols: SymbolTable) -> Optional[float]:
        diameter = args.get("d")
        if diameter is not None:
            value = evaluate(diameter, symbols)
            return None if value is None else value / 2
        radius = args.get("r", position=0)
        return None if radius is None else evaluate(radius, symbols)

    @staticmethod
    def _evaluate_vector(
        text: Optional[str], symbols: SymbolTable, size: Optional[int] = None,
    ) -> Optional[list[float]]:
        components = parse_vector(text)
        if components is None or (size is not None and len(components) != size):
            return None
        values = [evaluate(c, symbols) for c in components]
        if any(v is None for v in values):
            return None
        return values

    # ── 3. Difference cutters ─────────────────────────────────────

    def _check_difference_cutters(
        self, text: str, symbols: SymbolTable
    ) -> Optional[Violation]:
        if "difference" not in text:
            return None
        cfg = self.config
        for difference in find_calls(text, "difference"):
            body = child_text(text, difference.end)
            for cylinder in find_calls(body, "cylinder"):
                args = parse_arguments(cylinder.args)
                if not is_true_flag(args.keywords.get("center")):
                    continue
                height = evaluate(args.get("h", "height", position=0) or "", symbols)
                if height is None:
                    continue

                diameter_expr = args.get("d", "diameter")
                if diameter_expr is not None:
                    size = evaluate(diameter_expr, symbols)
                    label, limit = "d", cfg.max_cutter_diameter
                else:
                    size = self._cylinder_radius(args, symbols)
                    label, limit = "r", cfg.max_cutter_radius
                if size is None:
                    continue

                if height > cfg.max_cutter_height or size > limit:
                    return _violation(
                        ViolationCategory.PARAMETER_BOUNDS,
                        f"Difference geometry error: cutter cylinder too large "
                        f"(h={height:.1f}, {label}={size:.1f}). Large centred cylinders "
                        f"inside difference() crash the compiler. Use smaller "
                        f"dimensions or center=false.",
                        fixes_key="difference",
                    )
                if height <= 0 or size <= 0:
                    return _violation(
                        ViolationCategory.PARAMETER_BOUNDS,
                        f"Difference geometry error: cutter cylinder has invalid "
                        f"dimensions (h={height:.1f}, {label}={size:.1f}). "
                        f"Dimensions must be positive.",
                        fixes_key="difference",
                    )
        return None

    @staticmethod
    def _cylinder_radius(args: Arguments, symbols: SymbolTable) -> Optional[float]:
        radius_expr = args.get("r", "radius", position=1)
        if radius_expr is not None:
            return evaluate(radius_expr, symbols)
        tapered = [args.keywords.get(k) for k in ("r1", "r2")]
        values = [evaluate(e, symbols) for e in tapered if e is not None]
        if not values or any(v is None for v in values):
            return None
        return max(values)

    # ── 4. Scale ratio ────────────────────────────────────────────

    def _check_scale_ratio(self, text: str, symbols: SymbolTable) -> Optional[Violation]:
        if "scale" not in text:
            return None
        cfg = self.config
        for scale in find_calls(text, "scale"):
            vector_text = parse_arguments(scale.args).get("v", position=0) or ""
            if "/" in vector_text:
                return _violation(
                    ViolationCategory.SCALE_RATIO,
                    f"Scale transform error: scale({vector_text.strip()}) contains a "
                    f"division. Division inside scale() crashes the compiler "
                    f"regardless of its value. Use literal factors, e.g. "
                    f"scale([1, 1, 1.5]) instead of scale([1, 1, height/radius]).",
                )

            factors = self._scale_factors(vector_text, symbols)
            if not factors:
                continue
            largest, smallest = max(factors), min(factors)

            if smallest > 0 and largest / smallest > cfg.max_scale_ratio:
                return _violation(
                    ViolationCategory.SCALE_RATIO,
                    f"Scale transform error: extreme scale ratio "
                    f"({largest:.1f}:{smallest:.1f}). Non-uniform ratios above "
                    f"{cfg.max_scale_ratio:g}:1 are numerically unstable. Use "
                    f"separate translated spheres instead.",
                )
            if smallest < cfg.min_scale_factor:
                return _violation(
                    ViolationCategory.SCALE_RATIO,
                    f"Scale transform error: scale factor too small "
                    f"({smallest:.2f}, minimum {cfg.min_scale_factor:g}). Thin "
                    f"scaled geometry degenerates during CSG operations.",
                )

            sphere = chained_call(text, scale, ("sphere",))
            if sphere is not None:
                radius = self._sphere_radius(parse_arguments(sphere.args), symbols)
                if (radius is not None and radius > cfg.large_sphere_radius
                        and largest > cfg.large_sphere_max_scale):
                    return _violation(
                        ViolationCategory.SCALE_RATIO,
                        f"Scale transform error: large sphere (r={radius:.0f}) "
                        f"scaled by {largest:.1f}. This creates excessive polygon "
                        f"subdivision; keep r below {cfg.large_sphere_radius:g} or "
                        f"scale uniformly.",
                    )
        return None

    def _scale_factors(self, vector_text: str, symbols: SymbolTable) -> Optional[list[float]]:
        if vector_text.strip().startswith("["):
            return self._evaluate_vector(vector_text, symbols)
        factor = evaluate(vector_text, symbols)
        return None if factor is None else [factor, factor, factor]

    # ── 5. Parameter expression ───────────────────────────────────

    def _check_scale_expressions(self, text: str) -> Optional[Violation]:
        if "scale" not in text:
            return None
        limit = self.config.max_scale_operators
        for scale in find_calls(text, "scale"):
            vector_text = parse_arguments(scale.args).get("v", position=0) or ""
            components = parse_vector(vector_text)
            if components is None:
                components = [vector_text]
            operators = sum(count_operators(c) for c in components)
            if operators > limit:
                return _violation(
                    ViolationCategory.PARAMETER_EXPRESSION,
                    f"Parameter expression error: scale() contains a complex "
                    f"expression ({operators} operators, max {limit}). Simplify to "
                    f"literal numbers or a single multiplication.",
                )
        return None

    # ── 6. Parameter bounds ───────────────────────────────────────

    def _check_parameter_bounds(self, symbols: SymbolTable) -> Optional[Violation]:
        cfg = self.config
        for name, value in symbols.items():
            lowered = name.lower()
            is_radius = "radius" in lowered
            is_height = "height" in lowered
            is_dimension = is_radius or is_height or "width" in lowered or "length" in lowered

            if is_radius and value > cfg.max_radius:
                return _violation(
                    ViolationCategory.PARAMETER_BOUNDS,
                    f"Parameter size error: radius too large ({name}={value:g}). "
                    f"Maximum safe radius is {cfg.max_radius:g}; larger spheres "
                    f"exhaust compiler memory.",
                )
            if is_height and value > cfg.max_height:
                return _violation(
                    ViolationCategory.PARAMETER_BOUNDS,
                    f"Parameter size error: height too large ({name}={value:g}). "
                    f"Maximum safe height is {cfg.max_height:g}.",
                )
            if is_dimension and value < 0:
                return _violation(
                    ViolationCategory.PARAMETER_BOUNDS,
                    f"Parameter size error: negative dimension ({name}={value:g}). "
                    f"All dimensions must be positive.",
                )
        return None

    # ── 7. Extrusion pattern ──────────────────────────────────────

    def _check_extrusions(self, text: str, symbols: SymbolTable) -> Optional[Violation]:
        cfg = self.config
        if "linear_extrude" in text:
            for rotate in find_calls(text, "rotate"):
                for extrude in find_calls(child_text(text, rotate.end), "linear_extrude"):
                    if is_true_flag(parse_arguments(extrude.args).keywords.get("center")):
                        return _violation(
                            ViolationCategory.EXTRUDE_PATTERN,
                            "Linear extrude error: rotate() applied to "
                            "linear_extrude(center=true) misaligns coordinates and "
                            "crashes the CSG kernel. Use center=false and position "
                            "with translate() instead.",
                        )

            extrudes = list(find_calls(text, "linear_extrude"))
            for extrude in extrudes:
                args = parse_arguments(extrude.args)
                if (is_true_flag(args.keywords.get("center"))
                        and chained_call(text, extrude, ("polygon",)) is not None):
                    return _violation(
                        ViolationCategory.EXTRUDE_PATTERN,
                        "Linear extrude error: linear_extrude(center=true) applied "
                        "directly to polygon() produces non-manifold geometry. Use "
                        "center=false (the default) and translate the result.",
                    )

            for extrude in extrudes:
                height_expr = parse_arguments(extrude.args).get("height", "h", position=0)
                height = evaluate(height_expr or "", symbols)
                if height is not None and height > cfg.max_extrude_height:
                    return _violation(
                        ViolationCategory.EXTRUDE_PATTERN,
                        f"Linear extrude error: extrusion height too large "
                        f"({height:g}, max {cfg.max_extrude_height:g}).",
                    )

        if "polygon" in text:
            for polygon in find_calls(text, "polygon"):
                points = parse_vector(parse_arguments(polygon.args).get("points", position=0))
                if points is not None and len(points) > cfg.max_polygon_points:
                    return _violation(
                        ViolationCategory.EXTRUDE_PATTERN,
                        f"Linear extrude error: polygon with {len(points)} points "
                        f"(max {cfg.max_polygon_points}). Complex polygons trigger "
                        f"CSG assertion failures; split them into simpler shapes.",
                    )
        return None


def validate(
    script: str,
    parameters: Optional[Mapping[str, object]] = None,
    config: Optional[ValidatorConfig] = None,
) -> Optional[Violation]:
    """Validate ``script`` with default (or given) thresholds."""
    return SafetyValidator(config).validate(script, parameters)
