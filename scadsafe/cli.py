"""
Command-line interface for scadsafe.

Provides: init, validate, compile, template, show-config subcommands.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from scadsafe.config import ScadSafeConfig, _auto_detect_compiler
from scadsafe.core import FileType, Job, JobReport, Orchestrator, TemplateFallback
from scadsafe.templates import SizeHints, TemplateCatalog
from scadsafe.validator import SafetyValidator, Violation

console = Console()


# ── Rich console helpers ──────────────────────────────────────────────


def _print(msg: str, style: str = ""):
    console.print(msg, style=style)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _print_violation(violation: Violation):
    body = f"[bold red]✗ {violation.category.value}[/]\n   {violation.message}"
    if violation.suggested_fixes:
        body += "\n\n[bold]Suggestions:[/]\n" + "\n".join(
            f"   • {fix}" for fix in violation.suggested_fixes)
    console.print(Panel(body, title="Validation", border_style="red"))


def _print_report(report: JobReport, output: Optional[Path]):
    """Pretty-print a JobReport."""
    result = report.result
    if isinstance(result, TemplateFallback):
        status = (f"[bold yellow]⚠ Template fallback[/] ({result.template_name}) after "
                  f"{report.attempts} attempt(s)")
        border = "yellow"
    else:
        status = f"[bold green]✅ Compiled successfully[/] in {report.attempts} attempt(s)"
        border = "green"
    if output is not None:
        status += f"\n   Output: [cyan]{output}[/]"
    elif report.artifact is None:
        status += "\n   [red]No artifact produced[/]"
    console.print(Panel(status, title="Result", border_style=border))

    if report.history:
        table = Table(title="Attempts", show_lines=True)
        table.add_column("#", style="dim", width=3)
        table.add_column("Result", width=18)
        table.add_column("Details", ratio=1)
        for rec in report.history:
            name = type(rec.result).__name__
            detail = getattr(rec.result, "violation", None) or getattr(rec.result, "message", "")
            table.add_row(str(rec.attempt), name, str(detail)[:100] or "OK")
        console.print(table)


# ── Event handler for real-time feedback ──────────────────────────────


def _cli_event_handler(state: str, data: dict):
    """Print orchestrator events to the terminal."""
    prefix = "  "
    attempt = data.get("attempt")
    match state:
        case "validating":
            console.print(f"{prefix}[dim]─── Attempt {attempt} ───[/]")
            console.print(f"{prefix}🔍 Validating...")
        case "compiling":
            console.print(f"{prefix}[green]✓[/] Validation passed")
            console.print(f"{prefix}🔧 Compiling...")
        case "validation_failed":
            console.print(f"{prefix}[red]✗ Unsafe script:[/] {(data.get('error') or '')[:100]}")
        case "compile_failed":
            console.print(f"{prefix}[red]✗ Compile error:[/] {(data.get('error') or '')[:100]}")
        case "requesting_regeneration":
            console.print(f"{prefix}🧠 Requesting a repaired script...")
        case "exhausted":
            console.print(f"{prefix}[red]⛔ Attempts exhausted[/]")
        case "template_fallback":
            console.print(f"{prefix}[yellow]⚠ Using fallback template[/]")
        case "success":
            console.print(f"{prefix}[bold green]✅ Compiled![/]")


def _parse_defines(defines: tuple[str, ...]) -> dict[str, object]:
    """Turn ``name=value`` pairs into typed parameter values."""
    params: dict[str, object] = {}
    for item in defines:
        if "=" not in item:
            raise click.BadParameter(f"expected name=value, got {item!r}", param_hint="-D")
        name, raw = item.split("=", 1)
        params[name.strip()] = _parse_value(raw.strip())
    return params


def _parse_value(raw: str) -> object:
    if raw in ("true", "false"):
        return raw == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return raw[1:-1]
    return raw


# ── CLI Commands ──────────────────────────────────────────────────────


@click.group()
@click.version_option(package_name="scadsafe")
def cli():
    """scadsafe: validate and safely compile generated OpenSCAD scripts."""
    pass


@cli.command()
@click.option("--dir", "-d", default=".", help="Directory to initialize")
def init(dir: str):
    """Write a starter config.toml."""
    workspace = Path(dir)
    workspace.mkdir(parents=True, exist_ok=True)

    config = ScadSafeConfig()
    compiler = _auto_detect_compiler()
    if compiler:
        config.sandbox.compiler_path = compiler
        _print(f"  [green]✓[/] Found OpenSCAD: {compiler}")
    else:
        _print("  [yellow]⚠[/] OpenSCAD not found. Set sandbox.compiler_path later.")

    config_path = workspace / "config.toml"
    if not config_path.exists():
        config_path.write_text(config.to_toml_string(), encoding="utf-8")
        _print("  [green]✓[/] Created config.toml")
    else:
        _print("  [dim]  config.toml already exists, skipping[/]")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--define", "-D", "defines", multiple=True, help="Bound parameter name=value")
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
def validate(file, defines, config_path):
    """Check FILE against the known compiler crash patterns."""
    config = ScadSafeConfig.load(config_path)
    script = Path(file).read_text(encoding="utf-8")
    violation = SafetyValidator(config.validator).validate(script, _parse_defines(defines))
    if violation is None:
        _print(f"[bold green]✓ {file}: no known crash patterns[/]")
        return
    _print_violation(violation)
    sys.exit(1)


@cli.command(name="compile")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--define", "-D", "defines", multiple=True, help="Bound parameter name=value")
@click.option("--format", "-f", "file_type", default="stl",
              type=click.Choice([t.value for t in FileType]), help="Export format")
@click.option("--output", "-o", default=None, help="Output file path")
@click.option("--description", default="", help="What the model is (guides template fallback)")
@click.option("--model", "-m", default=None, help="LLM model override")
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
@click.option("--max-attempts", "-r", default=None, type=int, help="Max attempts")
@click.option("--mock", is_flag=True, help="Use mock compiler (for testing)")
@click.option("--no-regenerate", is_flag=True, help="Do not ask an LLM to repair failures")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def compile_cmd(file, defines, file_type, output, description, model, config_path,
                max_attempts, mock, no_regenerate, verbose):
    """Validate and compile FILE, repairing or falling back on failure."""
    _setup_logging(verbose)
    overrides = {}
    if model:
        overrides["llm.model"] = model
    if max_attempts:
        overrides["orchestrator.max_attempts"] = max_attempts
    config = ScadSafeConfig.load(config_path, **overrides)

    script = Path(file).read_text(encoding="utf-8")
    orchestrator = _create_orchestrator(config, mock=mock, regenerate=not no_regenerate)
    job = Job.create(script, file_type, _parse_defines(defines),
                     description=description or Path(file).stem)

    _print(f"\n[bold cyan]scadsafe[/] compiling [dim]{file}[/]\n")
    report = orchestrator.run(job, on_event=_cli_event_handler)

    out_path = None
    if report.artifact is not None:
        out_path = Path(output) if output else Path(config.output_dir) / f"{Path(file).stem}.{file_type}"
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(report.artifact)
    if isinstance(report.result, TemplateFallback):
        scad_path = (out_path or Path(config.output_dir) / Path(file).stem).with_suffix(".fallback.scad")
        scad_path.parent.mkdir(parents=True, exist_ok=True)
        scad_path.write_text(report.result.script, encoding="utf-8")
        _print(f"  [dim]Fallback script written to {scad_path}[/]")

    _print_report(report, out_path)
    sys.exit(0 if out_path is not None else 1)


@cli.command()
@click.argument("description")
@click.option("--height", type=float, default=None, help="Height hint (mm)")
@click.option("--width", type=float, default=None, help="Width hint (mm)")
@click.option("--radius", type=float, default=None, help="Radius hint (mm)")
def template(description, height, width, radius):
    """Print the fallback template chosen for DESCRIPTION."""
    hints = SizeHints(width=width, height=height, depth=width, radius=radius)
    chosen = TemplateCatalog().select(description, hints)
    _print(f"[bold]// template: {chosen.name}[/]")
    click.echo(chosen.script)


@cli.command()
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
def show_config(config_path):
    """Display current configuration."""
    config = ScadSafeConfig.load(config_path)
    _print("\n[bold]Configuration[/]\n")
    click.echo(config.to_toml_string())

    compiler = config.sandbox.compiler_path
    if compiler and Path(compiler).is_file():
        _print(f"[green]✓ OpenSCAD:[/] {compiler}")
    else:
        _print("[red]✗ OpenSCAD:[/] Not found")


# ── Factory helpers ───────────────────────────────────────────────────


def _create_orchestrator(config: ScadSafeConfig, mock: bool = False, regenerate: bool = True):
    """Create the orchestrator and its collaborators from config."""
    from scadsafe.compiler import MockRuntime
    from scadsafe.sandbox import SandboxEngine

    engine = SandboxEngine(config.sandbox, runtime_factory=MockRuntime if mock else None)
    regenerator = None
    if regenerate:
        from scadsafe.llm import LLMAdapter
        from scadsafe.regenerator import LLMRegenerator
        regenerator = LLMRegenerator(LLMAdapter(config.llm))
    return Orchestrator(
        engine,
        regenerator=regenerator,
        validator=SafetyValidator(config.validator),
        config=config.orchestrator,
    )


if __name__ == "__main__":
    cli()
