"""Runtime detection and the extension/invocation table for the sandbox."""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from toolrelay.errors import ValidationError

AUTO = "auto"

# Used when detection finds nothing
HOST_RUNTIME = "python"


@dataclass(frozen=True)
class Invocation:
    """How to run a source file: an optional compile step, then the run step."""

    run: list[str]
    compile: list[str] | None = None
    artifact: Path | None = None


@dataclass(frozen=True)
class Runtime:
    """A language toolchain the sandbox can drive."""

    name: str
    extension: str
    build: Callable[[Path], Invocation]
    compiled: bool = False


def _python(path: Path) -> Invocation:
    return Invocation(run=[sys.executable or "python3", str(path)])


def _bash(path: Path) -> Invocation:
    return Invocation(run=["bash", str(path)])


def _node(path: Path) -> Invocation:
    return Invocation(run=["node", "--no-deprecation", str(path)])


def _typescript(path: Path) -> Invocation:
    return Invocation(run=["npx", "ts-node", str(path)])


def _deno(path: Path) -> Invocation:
    return Invocation(run=["deno", "run", str(path)])


def _bun(path: Path) -> Invocation:
    return Invocation(run=["bun", "run", str(path)])


def _go(path: Path) -> Invocation:
    return Invocation(run=["go", "run", str(path)])


def _compiled(compiler: str) -> Callable[[Path], Invocation]:
    def build(path: Path) -> Invocation:
        artifact = path.with_suffix("")
        return Invocation(
            compile=[compiler, str(path), "-o", str(artifact)],
            run=[str(artifact)],
            artifact=artifact,
        )

    return build


RUNTIMES: dict[str, Runtime] = {
    "python": Runtime("python", ".py", _python),
    "bash": Runtime("bash", ".sh", _bash),
    "nodejs": Runtime("nodejs", ".cjs", _node),
    "typescript": Runtime("typescript", ".ts", _typescript),
    "deno": Runtime("deno", ".ts", _deno),
    "bun": Runtime("bun", ".js", _bun),
    "go": Runtime("go", ".go", _go),
    "rust": Runtime("rust", ".rs", _compiled("rustc"), compiled=True),
    "c": Runtime("c", ".c", _compiled("gcc"), compiled=True),
    "cpp": Runtime("cpp", ".cpp", _compiled("g++"), compiled=True),
}

ALIASES = {
    "py": "python",
    "python3": "python",
    "sh": "bash",
    "shell": "bash",
    "node": "nodejs",
    "javascript": "nodejs",
    "js": "nodejs",
    "ts": "typescript",
    "golang": "go",
    "rs": "rust",
    "c++": "cpp",
}

_PYTHON_SHEBANG = re.compile(r"^#!.*\bpython", re.MULTILINE)
_SHELL_SHEBANG = re.compile(r"^#!\s*(/bin/(ba)?sh|/usr/bin/env\s+(ba)?sh)\b", re.MULTILINE)

# Evaluated top to bottom; the first match wins. Substring tests are
# best-effort and can misfire (e.g. any "import " steers toward typescript
# when "print(" is absent). nodejs only catches what would otherwise fall
# through to the host runtime.
DETECTORS: list[tuple[str, Callable[[str], bool]]] = [
    ("python", lambda code: bool(_PYTHON_SHEBANG.search(code)) or ("import " in code and "print(" in code)),
    ("bash", lambda code: bool(_SHELL_SHEBANG.search(code)) or "echo " in code),
    ("go", lambda code: "package main" in code),
    ("rust", lambda code: "fn main()" in code),
    ("c", lambda code: "#include <stdio.h>" in code),
    ("cpp", lambda code: "#include <iostream>" in code),
    ("typescript", lambda code: "import " in code or "export " in code),
    ("nodejs", lambda code: "console.log" in code or "require(" in code),
]

_ESM_PATTERNS = [
    re.compile(r"^import\s+", re.MULTILINE),
    re.compile(r"\bawait\s+", re.IGNORECASE),
    re.compile(r"\bimport\s*\("),
]


def detect_runtime(code: str) -> str:
    """Pick a runtime from code markers, falling back to the host runtime."""
    for name, matches in DETECTORS:
        if matches(code):
            return name
    return HOST_RUNTIME


def resolve_runtime(runtime: str | None, code: str) -> Runtime:
    """Resolve an explicit runtime name (or ``auto``) to a Runtime.

    Raises:
        ValidationError: If the runtime name is unknown
    """
    name = (runtime or AUTO).strip().lower()
    if name == AUTO:
        name = detect_runtime(code)
    name = ALIASES.get(name, name)
    resolved = RUNTIMES.get(name)
    if resolved is None:
        valid = ", ".join(sorted(RUNTIMES))
        raise ValidationError(f"Invalid runtime: {runtime} (expected auto or one of: {valid})")
    return resolved


def file_extension(runtime: Runtime, code: str) -> str:
    """Extension for the temp source file; nodejs picks ESM or CommonJS."""
    if runtime.name == "nodejs":
        uses_esm = any(pattern.search(code) for pattern in _ESM_PATTERNS)
        return ".mjs" if uses_esm else ".cjs"
    return runtime.extension
