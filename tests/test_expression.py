"""
Tests for symbol extraction and the restricted arithmetic evaluator.
"""

import pytest

from scadsafe.expression import count_operators, evaluate, extract_symbols, merge_parameters
from scadsafe.scad_syntax import parse_arguments, parse_vector, split_top_level, strip_comments


# ── Symbol extraction ─────────────────────────────────────────────────


class TestExtractSymbols:
    def test_top_level_literals(self):
        symbols = extract_symbols("radius = 10;\nheight=40.5;\n")
        assert symbols == {"radius": 10.0, "height": 40.5}

    def test_nested_assignments_ignored(self):
        script = "width = 20;\nmodule part() {\n  inner = 5;\n  cube(inner);\n}\n"
        assert extract_symbols(script) == {"width": 20.0}

    def test_comments_ignored(self):
        script = "// radius = 99;\n/* height = 300; */\nradius = 10;\n"
        assert extract_symbols(script) == {"radius": 10.0}

    def test_later_assignment_wins(self):
        assert extract_symbols("a = 1;\na = 2;\n") == {"a": 2.0}

    def test_expressions_are_not_symbols(self):
        assert extract_symbols("a = 2;\nb = a * 2;\n") == {"a": 2.0}

    def test_negative_and_exponent(self):
        assert extract_symbols("lo = -3;\ntiny = 1e-3;\n") == {"lo": -3.0, "tiny": 0.001}


class TestMergeParameters:
    def test_parameters_override_script_values(self):
        merged = merge_parameters({"radius": 10.0}, {"radius": 20})
        assert merged["radius"] == 20.0

    def test_non_numeric_parameters_skipped(self):
        merged = merge_parameters({}, {"flag": True, "label": "abc", "h": "5", "v": [1, 2]})
        assert merged == {"h": 5.0}


# ── Evaluator ─────────────────────────────────────────────────────────


class TestEvaluate:
    SYMBOLS = {"radius": 10.0, "height": 40.0, "h": 4.0}

    @pytest.mark.parametrize("expr, expected", [
        ("height/radius", 4.0),
        ("(h + 2) * 0.5", 3.0),
        ("-radius", -10.0),
        ("1.5", 1.5),
        ("radius * 2 - h", 16.0),
    ])
    def test_arithmetic(self, expr, expected):
        assert evaluate(expr, self.SYMBOLS) == pytest.approx(expected)

    @pytest.mark.parametrize("expr", [
        "unknown + 1",
        "sin(30)",
        "2^3",
        "2 ** 3",
        "7 // 2",
        "a ? 1 : 2",
        "[1, 2, 3]",
        "true",
        "",
        "__import__('os')",
    ])
    def test_rejected(self, expr):
        assert evaluate(expr, self.SYMBOLS) is None

    def test_division_by_zero(self):
        assert evaluate("1/0", {}) is None

    def test_very_long_expression(self):
        assert evaluate("+".join(["1"] * 5000), {}) is None

    def test_deeply_nested_expression(self):
        assert evaluate("(" * 300 + "1" + ")" * 300, {}) is None


class TestCountOperators:
    def test_counts_binary_operators(self):
        assert count_operators("h/r*2+1") == 3

    def test_signs_are_not_operators(self):
        assert count_operators("-1") == 0
        assert count_operators("1e-3") == 0

    def test_unparseable_text_still_counted(self):
        assert count_operators("a + b ? c : d") >= 1

    def test_very_long_expression_counted_by_scan(self):
        assert count_operators("*".join(["1"] * 5000)) == 4999


# ── Source scanning ───────────────────────────────────────────────────


class TestScadSyntax:
    def test_strip_comments_keeps_offsets(self):
        text = "a = 1; // note\nb = 2;"
        stripped = strip_comments(text)
        assert len(stripped) == len(text)
        assert "note" not in stripped

    def test_strip_comments_keeps_strings(self):
        assert strip_comments('echo("http://x");') == 'echo("http://x");'

    def test_split_top_level(self):
        assert split_top_level("[0, 0, 1], r=2, center=true") == ["[0, 0, 1]", "r=2", "center=true"]

    def test_parse_arguments(self):
        args = parse_arguments("h=10, r=(a + 1) * 2, center=true, $fn=64")
        assert args.get("h") == "10"
        assert args.get("r") == "(a + 1) * 2"
        assert args.keywords["$fn"] == "64"

    def test_parse_vector(self):
        assert parse_vector("[1, 1, height/radius]") == ["1", "1", "height/radius"]
        assert parse_vector("2") is None
