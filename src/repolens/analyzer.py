"""Surface-level repository analysis. No model needed.

Walks the fetched tree, builds the file inventory and extension histogram,
maps extensions to languages and spots well-known manifest/config files.
Dependency and line metrics live in ``dependencies`` and ``metrics``.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .dependencies import DependencyRecord, extract_dependencies
from .errors import WalkFailure
from .metrics import CodeMetrics, calculate_metrics


@dataclass
class FileEntry:
    """One entry of the flat file list."""

    name: str
    path: str  # relative, forward slashes
    is_directory: bool
    size: int
    extension: str
    is_symlink: bool = False  # listed, never read

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StructureSummary:
    directories: int = 0
    files: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    max_depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConfigFile:
    name: str
    path: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RepoAnalysis:
    """Consolidated surface analysis of one repository."""

    path: str
    name: str
    structure: StructureSummary = field(default_factory=StructureSummary)
    files: list[FileEntry] = field(default_factory=list)
    languages: set[str] = field(default_factory=set)
    config_files: list[ConfigFile] = field(default_factory=list)
    dependencies: list[DependencyRecord] = field(default_factory=list)
    code_metrics: CodeMetrics = field(default_factory=CodeMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "structure": self.structure.to_dict(),
            "languages": sorted(self.languages),
            "config_files": [c.to_dict() for c in self.config_files],
            "dependencies": [d.to_dict() for d in self.dependencies],
            "files": [f.to_dict() for f in self.files],
            "code_metrics": self.code_metrics.to_dict(),
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "RepoAnalysis":
        """Rebuild an analysis from stored snake_case data. The tree itself is gone."""
        return cls(
            path="",
            name=name,
            structure=StructureSummary(**data.get("structure", {})),
            files=[FileEntry(**f) for f in data.get("files", [])],
            languages=set(data.get("languages", [])),
            config_files=[ConfigFile(**c) for c in data.get("config_files", [])],
            dependencies=[DependencyRecord(**d) for d in data.get("dependencies", [])],
            code_metrics=CodeMetrics(**data.get("code_metrics", {})),
        )

    def summary_for_prompt(self) -> str:
        """Generate a concise summary suitable for LLM prompt context."""
        lines = []
        lines.append(f"Repository: {self.name}")
        lines.append(f"Files: {self.structure.files}, Directories: {self.structure.directories}, Max depth: {self.structure.max_depth}")

        if self.languages:
            lines.append(f"Languages: {', '.join(sorted(self.languages))}")

        if self.structure.by_type:
            top = sorted(self.structure.by_type.items(), key=lambda x: -x[1])[:10]
            types = ", ".join(f"{ext or '(none)'} ({c})" for ext, c in top)
            lines.append(f"File types: {types}")

        if self.config_files:
            lines.append(f"Config files: {', '.join(c.path for c in self.config_files[:20])}")

        if self.dependencies:
            deps = ", ".join(f"{d.name}@{d.version}" for d in self.dependencies[:25])
            lines.append(f"Dependencies ({len(self.dependencies)}): {deps}")

        m = self.code_metrics
        if m.total_files:
            lines.append(
                f"Lines: {m.total_lines} across {m.total_files} text files "
                f"(avg {m.avg_lines_per_file}, largest {m.largest_file['path']} with {m.largest_file['lines']})"
            )

        return "\n".join(lines)


# --- Tree walking ---

# Version-control metadata is not repository content
VCS_DIRS = {".git", ".hg", ".svn"}


def walk_structure(root: str | Path) -> tuple[StructureSummary, list[FileEntry]]:
    """Iteratively walk ``root`` and return the structure summary and file list.

    Uses an explicit stack, so arbitrarily deep trees cannot exhaust the
    interpreter's recursion limit. Symbolic links are listed but never
    followed. Any I/O error aborts with WalkFailure.
    """
    root = Path(root)
    if not root.is_dir():
        raise WalkFailure("Repository tree is missing", f"Not a directory: {root}")

    structure = StructureSummary()
    files: list[FileEntry] = []
    stack: list[tuple[Path, str, int]] = [(root, "", 0)]

    while stack:
        current, rel_dir, depth = stack.pop()
        structure.max_depth = max(structure.max_depth, depth)

        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise WalkFailure("Could not read repository tree", str(e)) from e

        subdirs = []
        for entry in entries:
            rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_link = entry.is_symlink()
                if is_dir and entry.name in VCS_DIRS:
                    continue
                size = 0 if is_dir else entry.stat(follow_symlinks=False).st_size
            except OSError as e:
                raise WalkFailure("Could not read repository tree", str(e)) from e

            ext = "" if is_dir else os.path.splitext(entry.name)[1].lower()
            files.append(FileEntry(
                name=entry.name,
                path=rel,
                is_directory=is_dir,
                size=size,
                extension=ext,
                is_symlink=is_link,
            ))

            if is_dir:
                structure.directories += 1
                subdirs.append((Path(entry.path), rel, depth + 1))
            else:
                structure.files += 1
                structure.by_type[ext] = structure.by_type.get(ext, 0) + 1

        # Reverse so directories pop in name order
        stack.extend(reversed(subdirs))

    return structure, files


# --- Language detection ---

# Extension -> Language mapping
EXT_LANG = {
    ".py": "Python", ".pyi": "Python",
    ".js": "JavaScript", ".mjs": "JavaScript", ".cjs": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript", ".mts": "TypeScript",
    ".rs": "Rust",
    ".go": "Go",
    ".java": "Java", ".kt": "Kotlin", ".kts": "Kotlin",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".c": "C", ".h": "C/C++",
    ".cpp": "C++", ".cc": "C++", ".cxx": "C++", ".hpp": "C++",
    ".cs": "C#",
    ".scala": "Scala",
    ".ex": "Elixir", ".exs": "Elixir",
    ".erl": "Erlang",
    ".hs": "Haskell",
    ".lua": "Lua",
    ".r": "R",
    ".dart": "Dart",
    ".vue": "Vue",
    ".svelte": "Svelte",
    ".proto": "Protocol Buffers",
    ".sql": "SQL",
    ".sh": "Shell", ".bash": "Shell", ".zsh": "Shell",
    ".yaml": "YAML", ".yml": "YAML",
    ".toml": "TOML",
    ".json": "JSON",
    ".xml": "XML",
    ".md": "Markdown",
    ".html": "HTML", ".htm": "HTML",
    ".css": "CSS", ".scss": "SCSS", ".sass": "SCSS", ".less": "LESS",
}


def detect_languages(files: list[FileEntry]) -> set[str]:
    """Collapse file extensions into the set of known languages."""
    languages = set()
    for f in files:
        if f.is_directory:
            continue
        lang = EXT_LANG.get(f.extension)
        if lang:
            languages.add(lang)
    return languages


# --- Config / manifest detection ---

CONFIG_FILENAMES = {
    # Dependency manifests and lock files
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "requirements.txt", "Pipfile", "pyproject.toml", "setup.py", "setup.cfg",
    "Cargo.toml", "go.mod", "Gemfile", "composer.json",
    "pom.xml", "build.gradle", "build.gradle.kts",
    # Containers and deployment
    "Dockerfile", ".dockerignore", "docker-compose.yml", "docker-compose.yaml",
    "Procfile", "Makefile",
    # CI
    ".gitlab-ci.yml", ".travis.yml", "Jenkinsfile", "azure-pipelines.yml",
    # Tooling
    ".gitignore", ".env.example", "tsconfig.json", "webpack.config.js",
    ".eslintrc", ".eslintrc.json", ".prettierrc",
}


def find_config_files(files: list[FileEntry]) -> list[ConfigFile]:
    """Pick known manifest/config files out of the file list."""
    return [
        ConfigFile(name=f.name, path=f.path, size=f.size)
        for f in files
        if not f.is_directory and not f.is_symlink and f.name in CONFIG_FILENAMES
    ]


def analyze_repo(path: str | Path, include_dependencies: bool = True) -> RepoAnalysis:
    """Run the full surface analysis serially on a local tree."""
    path = Path(path).resolve()
    structure, files = walk_structure(path)
    config_files = find_config_files(files)

    analysis = RepoAnalysis(
        path=str(path),
        name=path.name,
        structure=structure,
        files=files,
        languages=detect_languages(files),
        config_files=config_files,
    )
    if include_dependencies:
        analysis.dependencies = extract_dependencies(path, config_files)
    analysis.code_metrics = calculate_metrics(path, files)
    return analysis
