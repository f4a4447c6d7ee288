"""
Tests for the scadsafe command line, run through click's CliRunner with
the mock compiler.
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from scadsafe.cli import _parse_defines, cli


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv("SCADSAFE_CONFIG", raising=False)
    return CliRunner()


def _write(name, text):
    Path(name).write_text(text, encoding="utf-8")
    return name


class TestValidate:
    def test_safe_file(self, runner):
        with runner.isolated_filesystem():
            _write("ok.scad", "cube([10, 10, 10]);\n")
            result = runner.invoke(cli, ["validate", "ok.scad"])
        assert result.exit_code == 0
        assert "no known crash patterns" in result.output

    def test_unsafe_file(self, runner):
        with runner.isolated_filesystem():
            _write("bad.scad", "radius = 10;\nheight = 40;\nscale([1, 1, height/radius]) sphere(r=radius);\n")
            result = runner.invoke(cli, ["validate", "bad.scad"])
        assert result.exit_code == 1
        assert "scale_ratio" in result.output

    def test_defines_are_checked(self, runner):
        with runner.isolated_filesystem():
            _write("param.scad", "radius = 10;\nsphere(r=radius);\n")
            result = runner.invoke(cli, ["validate", "param.scad", "-D", "radius=120"])
        assert result.exit_code == 1
        assert "parameter_bounds" in result.output


class TestCompile:
    def test_mock_success(self, runner):
        with runner.isolated_filesystem():
            _write("part.scad", "cube(10);\n")
            result = runner.invoke(cli, ["compile", "part.scad", "--mock", "--no-regenerate",
                                         "-o", "out/part.stl"])
            assert result.exit_code == 0, result.output
            assert Path("out/part.stl").read_bytes()[:8] == b"scadsafe"

    def test_default_output_dir(self, runner):
        with runner.isolated_filesystem():
            _write("part.scad", "cube(10);\n")
            result = runner.invoke(cli, ["compile", "part.scad", "--mock", "--no-regenerate",
                                         "-f", "off"])
            assert result.exit_code == 0, result.output
            assert Path("output/part.off").is_file()

    def test_unsafe_script_falls_back_to_template(self, runner):
        with runner.isolated_filesystem():
            _write("mug.scad", "scale([1, 1, 4/2]) sphere(r=10);\n")
            result = runner.invoke(cli, ["compile", "mug.scad", "--mock", "--no-regenerate",
                                         "--description", "a coffee mug", "-o", "mug.stl"])
            assert result.exit_code == 0, result.output
            assert "Template fallback" in result.output
            assert Path("mug.stl").is_file()
            assert "Fallback container" in Path("mug.fallback.scad").read_text(encoding="utf-8")


class TestOtherCommands:
    def test_template(self, runner):
        result = runner.invoke(cli, ["template", "a 40mm vase"])
        assert result.exit_code == 0
        assert "organic" in result.output
        assert "body_height = 40;" in result.output

    def test_init_writes_config(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["init", "--dir", "ws"])
            assert result.exit_code == 0
            assert "[orchestrator]" in Path("ws/config.toml").read_text(encoding="utf-8")
            again = runner.invoke(cli, ["init", "--dir", "ws"])
            assert "already exists" in again.output

    def test_show_config(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["show-config"])
        assert result.exit_code == 0
        assert "max_attempts = 3" in result.output


class TestDefines:
    def test_typed_values(self):
        assert _parse_defines(("a=1", "b=2.5", "c=true", 'd="x y"', "e=raw")) == {
            "a": 1, "b": 2.5, "c": True, "d": "x y", "e": "raw",
        }
