"""
Tests for the crash-pattern validator.

Each category gets a script that must be rejected, a near miss that must
pass, and where relevant a case the evaluator cannot resolve (the check is
skipped rather than failed).
"""

import pytest

from scadsafe.config import ValidatorConfig
from scadsafe.validator import SafetyValidator, ViolationCategory, validate


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def validator():
    return SafetyValidator()


def _category(violation):
    assert violation is not None, "expected a violation"
    return violation.category


# ── General ───────────────────────────────────────────────────────────


class TestGeneral:
    def test_safe_script(self, validator):
        assert validator.validate("cube([10, 10, 10]);") is None

    def test_empty_script(self, validator):
        assert validator.validate("") is None

    def test_malformed_script_does_not_raise(self, validator):
        assert validator.validate("hull() { translate([0,0") is None

    def test_commented_out_code_ignored(self, validator):
        assert validator.validate("/* scale([1,1,h/r]) */\ncube(10);") is None

    def test_first_check_wins(self, validator):
        hulls = "\n".join("hull() { cube(1); }" for _ in range(7))
        script = hulls + "\nscale([1, 1, 4/2]) cube(1);"
        assert _category(validator.validate(script)) is ViolationCategory.COMPLEXITY

    def test_violation_carries_fixes(self, validator):
        violation = validator.validate("scale([1, 1, 2/1]) cube(1);")
        assert violation.suggested_fixes
        lines = violation.log_lines()
        assert lines[0] == violation.message
        assert "Suggestion:" in lines

    def test_module_level_validate(self):
        assert validate("cube(1);") is None


# ── 1. Complexity ─────────────────────────────────────────────────────


class TestComplexity:
    def test_too_many_hulls(self, validator):
        script = "\n".join("hull() { cube(1); }" for _ in range(7))
        violation = validator.validate(script)
        assert _category(violation) is ViolationCategory.COMPLEXITY
        assert "hull" in violation.message

    def test_six_hulls_allowed(self, validator):
        script = "\n".join("hull() { cube(1); }" for _ in range(6))
        assert validator.validate(script) is None

    def test_too_many_primitives(self, validator):
        script = "\n".join(f"translate([{i * 10}, 0, 0]) sphere(r=1);" for i in range(31))
        assert _category(validator.validate(script)) is ViolationCategory.COMPLEXITY

    def test_too_many_booleans(self, validator):
        script = "\n".join("union() { cube(1); }" for _ in range(11))
        assert _category(validator.validate(script)) is ViolationCategory.COMPLEXITY

    def test_scales_only_limited_with_hull(self, validator):
        scales = "\n".join("scale([1, 1, 1]) cube(1);" for _ in range(11))
        assert validator.validate(scales) is None
        with_hull = scales + "\nhull() { cube(1); }"
        assert _category(validator.validate(with_hull)) is ViolationCategory.COMPLEXITY


# ── 2. Hull overlap ───────────────────────────────────────────────────


def _hull(*spheres):
    body = "\n".join(f"  translate([{x}, 0, 0]) sphere(r={r});" for x, r in spheres)
    return f"hull() {{\n{body}\n}}\n"


class TestHullOverlap:
    def test_overlapping_spheres_crash(self, validator):
        violation = validator.validate(_hull((0, 10), (5, 10)))
        assert _category(violation) is ViolationCategory.HULL_OVERLAP
        assert "overlap" in violation.message

    def test_close_spheres_risky(self, validator):
        violation = validator.validate(_hull((0, 10), (25, 10)))
        assert _category(violation) is ViolationCategory.HULL_OVERLAP
        assert "too close" in violation.message

    def test_separated_spheres_pass(self, validator):
        assert validator.validate(_hull((0, 10), (40, 10))) is None

    def test_symbols_resolved(self, validator):
        script = "r = 10;\n" + _hull((0, "r"), ("r", "r"))
        assert _category(validator.validate(script)) is ViolationCategory.HULL_OVERLAP

    def test_bound_parameters_resolved(self, validator):
        script = _hull((0, 10), ("gap", 10))
        assert validator.validate(script, {"gap": 50}) is None
        assert _category(validator.validate(script, {"gap": 12})) is ViolationCategory.HULL_OVERLAP

    def test_unresolved_position_skipped(self, validator):
        assert validator.validate(_hull((0, 10), ("offset", 10))) is None

    def test_nested_translates_accumulate(self, validator):
        script = (
            "hull() {\n"
            "  translate([0, 0, 10]) translate([0, 0, 5]) sphere(r=10);\n"
            "  translate([0, 0, 0]) sphere(r=10);\n"
            "}\n"
        )
        assert _category(validator.validate(script)) is ViolationCategory.HULL_OVERLAP

    def test_translate_inside_nested_block_is_not_a_root(self, validator):
        script = (
            "hull() {\n"
            "  translate([0, 0, 0]) sphere(r=5);\n"
            "  translate([50, 0, 0]) {\n"
            "    cube(1);\n"
            "    translate([0, 0, 0]) sphere(r=5);\n"
            "  }\n"
            "}\n"
        )
        assert validator.validate(script) is None

    def test_translate_behind_other_transform_is_skipped(self, validator):
        script = (
            "hull() {\n"
            "  translate([0, 0, 0]) sphere(r=5);\n"
            "  rotate([0, 0, 90]) translate([0, 0, 1]) sphere(r=5);\n"
            "}\n"
        )
        assert validator.validate(script) is None

    def test_diameter_sizing(self, validator):
        script = "hull() {\n  translate([0,0,0]) sphere(d=20);\n  translate([40,0,0]) sphere(d=20);\n}\n"
        assert validator.validate(script) is None

    def test_spheres_outside_hull_ignored(self, validator):
        script = "translate([0,0,0]) sphere(r=10);\ntranslate([5,0,0]) sphere(r=10);\n"
        assert validator.validate(script) is None


# ── 3. Difference cutters ─────────────────────────────────────────────


def _difference(cutter):
    return f"difference() {{\n  cube([50, 50, 50]);\n  {cutter};\n}}\n"


class TestDifferenceCutters:
    def test_tall_centred_cutter(self, validator):
        violation = validator.validate(_difference("cylinder(h=150, r=5, center=true)"))
        assert _category(violation) is ViolationCategory.PARAMETER_BOUNDS
        assert "cutter" in violation.message

    def test_wide_centred_cutter(self, validator):
        violation = validator.validate(_difference("cylinder(h=10, d=250, center=true)"))
        assert _category(violation) is ViolationCategory.PARAMETER_BOUNDS

    def test_degenerate_cutter(self, validator):
        violation = validator.validate(_difference("cylinder(h=10, r=0, center=true)"))
        assert _category(violation) is ViolationCategory.PARAMETER_BOUNDS
        assert "invalid" in violation.message

    def test_uncentred_cutter_ignored(self, validator):
        assert validator.validate(_difference("cylinder(h=150, r=5)")) is None

    def test_small_centred_cutter_passes(self, validator):
        assert validator.validate(_difference("cylinder(h=60, r=5, center=true)")) is None


# ── 4. Scale ratio ────────────────────────────────────────────────────


class TestScaleRatio:
    @pytest.mark.parametrize("vector", [
        "[1, 1, height/radius]",
        "[1, 1, 4/2]",
        "[1/1, 1, 1]",
    ])
    def test_division_always_rejected(self, validator, vector):
        script = f"radius = 10;\nheight = 40;\nscale({vector}) sphere(r=radius);"
        violation = validator.validate(script)
        assert _category(violation) is ViolationCategory.SCALE_RATIO
        assert "division" in violation.message

    def test_extreme_ratio(self, validator):
        assert _category(validator.validate("scale([1, 1, 6]) sphere(r=5);")) is ViolationCategory.SCALE_RATIO

    def test_small_factor(self, validator):
        assert _category(validator.validate("scale([1, 1, 0.5]) cube(10);")) is ViolationCategory.SCALE_RATIO

    def test_scalar_scale(self, validator):
        assert _category(validator.validate("scale(0.5) cube(10);")) is ViolationCategory.SCALE_RATIO

    def test_large_sphere_stretched(self, validator):
        violation = validator.validate("scale([1, 1, 1.6]) sphere(r=60);")
        assert _category(violation) is ViolationCategory.SCALE_RATIO
        assert "large sphere" in violation.message

    def test_moderate_scale_passes(self, validator):
        assert validator.validate("scale([1, 1, 1.6]) sphere(r=40);") is None
        assert validator.validate("scale([1, 1, 1.2]) sphere(r=10);") is None

    def test_unresolved_factor_skipped(self, validator):
        assert validator.validate("scale([1, 1, k]) cube(1);") is None

    def test_threshold_is_configurable(self):
        relaxed = SafetyValidator(ValidatorConfig(max_scale_ratio=10))
        assert relaxed.validate("scale([1, 1, 6]) sphere(r=5);") is None


# ── 5. Parameter expression ───────────────────────────────────────────


class TestParameterExpression:
    def test_complex_scale_expression(self, validator):
        violation = validator.validate("scale([1, 1, a*b+c-d]) cube(1);")
        assert _category(violation) is ViolationCategory.PARAMETER_EXPRESSION

    def test_very_long_expression_is_rejected_not_raised(self):
        factors = "*".join(["1"] * 5000)
        violation = validate(f"scale([{factors}, 1, 1]) cube(1);")
        assert _category(violation) is ViolationCategory.PARAMETER_EXPRESSION

    def test_simple_expression_allowed(self, validator):
        assert validator.validate("scale([1, 1, k*2]) cube(1);") is None


# ── 6. Parameter bounds ───────────────────────────────────────────────


class TestParameterBounds:
    @pytest.mark.parametrize("assignment", [
        "sphere_radius = 90;",
        "Radius = 81;",
        "tower_height = 250;",
        "wall_width = -2;",
        "beam_length = -1;",
    ])
    def test_out_of_range(self, validator, assignment):
        violation = validator.validate(f"{assignment}\ncube(10);")
        assert _category(violation) is ViolationCategory.PARAMETER_BOUNDS

    def test_in_range(self, validator):
        script = "radius = 80;\nheight = 200;\nwidth = 500;\ncube(10);"
        assert validator.validate(script) is None

    def test_non_dimension_names_ignored(self, validator):
        assert validator.validate("count = 500;\noffset = -20;\ncube(10);") is None

    def test_bound_parameter_overrides_script(self, validator):
        script = "radius = 10;\nsphere(r=radius);"
        assert _category(validator.validate(script, {"radius": 100})) is ViolationCategory.PARAMETER_BOUNDS
        assert validator.validate("radius = 100;\nsphere(r=radius);", {"radius": 10}) is None


# ── 7. Extrusion pattern ──────────────────────────────────────────────


class TestExtrusion:
    def test_rotate_centred_extrude(self, validator):
        script = "rotate([90, 0, 0]) linear_extrude(height=10, center=true) square(5);"
        violation = validator.validate(script)
        assert _category(violation) is ViolationCategory.EXTRUDE_PATTERN
        assert "rotate" in violation.message

    def test_centred_extrude_of_polygon(self, validator):
        script = "linear_extrude(height=10, center=true) polygon([[0,0],[10,0],[0,10]]);"
        violation = validator.validate(script)
        assert _category(violation) is ViolationCategory.EXTRUDE_PATTERN
        assert "polygon" in violation.message

    def test_tall_extrusion(self, validator):
        assert _category(validator.validate("linear_extrude(height=250) square(5);")) is ViolationCategory.EXTRUDE_PATTERN

    def test_polygon_point_limit(self, validator):
        points = ", ".join(f"[{i}, {i * i}]" for i in range(13))
        violation = validator.validate(f"polygon([{points}]);")
        assert _category(violation) is ViolationCategory.EXTRUDE_PATTERN
        assert "13 points" in violation.message

    def test_safe_extrusion(self, validator):
        script = (
            "rotate([90, 0, 0])\n"
            "translate([0, 0, -5])\n"
            "linear_extrude(height=10) polygon([[0,0],[10,0],[10,10],[0,10]]);"
        )
        assert validator.validate(script) is None
