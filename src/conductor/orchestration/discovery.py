from __future__ import annotations

import os
from collections import Counter
from collections.abc import Iterable
from pathlib import Path
from typing import Any

SKIP_DIRS = {
    ".git",
    ".hg",
    ".venv",
    "venv",
    "node_modules",
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    "dist",
    "build",
    ".next",
    "target",
}
LANGUAGE_EXTENSIONS = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".swift": "swift",
}
MANIFESTS = (
    "package.json",
    "pyproject.toml",
    "requirements.txt",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "Gemfile",
)
MAX_SAMPLE_FILES = 60


def discover_repository(root: Path, *, max_files: int = 5000) -> dict[str, Any]:
    """Summarize a checkout: languages, manifests, top-level layout and a file sample."""
    if not root.is_dir():
        return {"path": str(root), "exists": False}

    languages: Counter[str] = Counter()
    sample: list[str] = []
    seen = 0
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS and not d.startswith("."))
        for name in sorted(files):
            seen += 1
            language = LANGUAGE_EXTENSIONS.get(Path(name).suffix.lower())
            if language:
                languages[language] += 1
                if len(sample) < MAX_SAMPLE_FILES:
                    sample.append(str((Path(current) / name).relative_to(root)))
            if seen >= max_files:
                break
        if seen >= max_files:
            break

    return {
        "path": str(root),
        "exists": True,
        "file_count": seen,
        "truncated": seen >= max_files,
        "languages": dict(languages.most_common()),
        "manifests": [name for name in MANIFESTS if (root / name).exists()],
        "top_level": sorted(
            entry.name + ("/" if entry.is_dir() else "")
            for entry in root.iterdir()
            if entry.name not in SKIP_DIRS and not entry.name.startswith(".")
        ),
        "sample_files": sample,
    }


def discover_codebase(repositories: Iterable[tuple[str, Path]]) -> dict[str, dict[str, Any]]:
    return {name: discover_repository(path) for name, path in repositories}


def format_discovery(knowledge: dict[str, dict[str, Any]]) -> str:
    if not knowledge:
        return ""
    lines = ["## Codebase overview", ""]
    for name, summary in knowledge.items():
        if not summary.get("exists"):
            lines.append(f"### {name}: checkout not found at {summary.get('path')}")
            continue
        languages = ", ".join(f"{lang} ({count})" for lang, count in summary["languages"].items())
        lines.append(f"### {name}")
        lines.append(f"Languages: {languages or 'unknown'}")
        if summary["manifests"]:
            lines.append(f"Manifests: {', '.join(summary['manifests'])}")
        lines.append(f"Top level: {', '.join(summary['top_level'][:30])}")
        if summary["sample_files"]:
            lines.append("Sample files:")
            lines.extend(f"- {path}" for path in summary["sample_files"][:25])
        lines.append("")
    return "\n".join(lines)
