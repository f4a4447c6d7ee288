"""
Configuration management for scadsafe.

Uses stdlib dataclasses for zero-dependency operation.
Reads from config.toml, environment variables, and CLI overrides.

The validator thresholds live here rather than in code: they were tuned
against one compiler build's known fault modes and are expected to move
when the compiler does.
"""

from __future__ import annotations

import os
import platform
import shutil
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

_COMPILER_SEARCH_PATHS = {
    "Darwin": ["/Applications/OpenSCAD.app/Contents/MacOS/OpenSCAD"],
    "Windows": [
        r"C:\Program Files\OpenSCAD\openscad.exe",
        r"C:\Program Files (x86)\OpenSCAD\openscad.exe",
    ],
    "Linux": ["/usr/bin/openscad", "/usr/local/bin/openscad", "/snap/bin/openscad"],
}

DEFAULT_LIBRARIES = {
    "BOSL2": "https://github.com/BelfrySCAD/BOSL2/archive/refs/heads/master.zip",
    "BOSL": "https://github.com/revarbat/BOSL/archive/refs/heads/master.zip",
    "MCAD": "https://github.com/openscad/MCAD/archive/refs/heads/master.zip",
}


def _auto_detect_compiler() -> Optional[str]:
    env_path = os.environ.get("OPENSCAD_PATH")
    if env_path and Path(env_path).is_file():
        return env_path
    which = shutil.which("openscad")
    if which:
        return which
    for path in _COMPILER_SEARCH_PATHS.get(platform.system(), []):
        if Path(path).is_file():
            return path
    return None


@dataclass
class LLMConfig:
    model: str = "claude-sonnet-4-5"
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = 8000

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        model_lower = self.model.lower()
        if "claude" in model_lower:
            preferred = ["ANTHROPIC_API_KEY"]
        elif "deepseek" in model_lower:
            preferred = ["DEEPSEEK_API_KEY"]
        elif "gemini" in model_lower:
            preferred = ["GEMINI_API_KEY"]
        else:
            preferred = ["OPENAI_API_KEY"]
        for name in preferred + ["ANTHROPIC_API_KEY", "OPENAI_API_KEY", "DEEPSEEK_API_KEY"]:
            val = os.environ.get(name)
            if val:
                return val
        return None


@dataclass
class ValidatorConfig:
    # Complexity
    max_hulls: int = 6
    max_primitives: int = 30
    max_scales_with_hull: int = 10
    max_boolean_ops: int = 10
    # Hull overlap: multiples of the summed radii
    overlap_crash_factor: float = 1.0
    overlap_risk_factor: float = 1.5
    # Difference cutters with center=true
    max_cutter_height: float = 100.0
    max_cutter_diameter: float = 200.0
    max_cutter_radius: float = 100.0
    # Scale
    max_scale_ratio: float = 5.0
    min_scale_factor: float = 0.7
    large_sphere_radius: float = 50.0
    large_sphere_max_scale: float = 1.5
    max_scale_operators: int = 2
    # Parameter bounds
    max_radius: float = 80.0
    max_height: float = 200.0
    # Extrusion
    max_extrude_height: float = 200.0
    max_polygon_points: int = 12


@dataclass
class SandboxConfig:
    compiler_path: Optional[str] = None
    timeout: float = 30.0
    export_flags: list[str] = field(default_factory=lambda: [
        "--enable=manifold",
        "--enable=fast-csg",
        "--enable=lazy-union",
        "--enable=roof",
    ])
    libraries: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LIBRARIES))
    fetch_timeout: float = 60.0


@dataclass
class OrchestratorConfig:
    max_attempts: int = 3
    compile_templates: bool = True


@dataclass
class ScadSafeConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    output_dir: str = "./output"

    @classmethod
    def load(cls, config_path: Optional[str] = None, **overrides) -> ScadSafeConfig:
        data: dict = {}
        if config_path is None:
            config_path = os.environ.get("SCADSAFE_CONFIG", "config.toml")
        path = Path(config_path)
        if path.exists():
            with open(path, "rb") as f:
                data = tomllib.load(f)
        for key, val in overrides.items():
            if val is not None:
                _nested_set(data, key, val)
        config = cls._from_dict(data)
        if not config.sandbox.compiler_path:
            config.sandbox.compiler_path = _auto_detect_compiler()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> ScadSafeConfig:
        def pick(klass, d):
            if not isinstance(d, dict):
                return klass()
            known = {f.name for f in fields(klass)}
            return klass(**{k: v for k, v in d.items() if k in known})

        return cls(
            llm=pick(LLMConfig, data.get("llm", {})),
            validator=pick(ValidatorConfig, data.get("validator", {})),
            sandbox=pick(SandboxConfig, data.get("sandbox", {})),
            orchestrator=pick(OrchestratorConfig, data.get("orchestrator", {})),
            output_dir=data.get("output_dir", "./output"),
        )

    def ensure_dirs(self):
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)

    def to_toml_string(self) -> str:
        lines = [
            "# scadsafe configuration", "",
            "[llm]", f'model = "{self.llm.model}"',
            '# api_key = "your-key-here"',
        ]
        if self.llm.api_base:
            lines.append(f'api_base = "{self.llm.api_base}"')
        lines += [
            f"temperature = {self.llm.temperature}", f"max_tokens = {self.llm.max_tokens}",
            "", "[orchestrator]",
            f"max_attempts = {self.orchestrator.max_attempts}",
            f"compile_templates = {str(self.orchestrator.compile_templates).lower()}",
            "", "[sandbox]",
        ]
        if self.sandbox.compiler_path:
            lines.append(f'compiler_path = "{Path(self.sandbox.compiler_path).as_posix()}"')
        else:
            lines.append('# compiler_path = "/path/to/openscad"')
        flags = ", ".join(f'"{flag}"' for flag in self.sandbox.export_flags)
        lines += [
            f"timeout = {self.sandbox.timeout}",
            f"fetch_timeout = {self.sandbox.fetch_timeout}",
            f"export_flags = [{flags}]",
            "", "[sandbox.libraries]",
        ]
        lines += [f'{name} = "{url}"' for name, url in self.sandbox.libraries.items()]
        lines += ["", "[validator]"]
        lines += [
            f"{f.name} = {getattr(self.validator, f.name)}"
            for f in fields(ValidatorConfig)
        ]
        # Top-level keys must precede the first table.
        header = [f'output_dir = "{self.output_dir}"', ""]
        return "\n".join(header + lines) + "\n"


def _nested_set(d: dict, key: str, value):
    parts = key.split(".")
    for part in parts[:-1]:
        d = d.setdefault(part, {})
    d[parts[-1]] = value
