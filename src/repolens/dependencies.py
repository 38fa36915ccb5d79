"""Dependency extraction from recognized manifests.

Supported manifests:
- package.json: ``dependencies`` (runtime) and ``devDependencies`` (dev)
- requirements.txt: pinned ``name==version`` lines

A manifest that cannot be parsed contributes no records; the rest of the
analysis carries on.
"""

from __future__ import annotations

import json
import logging
import os
import re
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

from .errors import PartialExtractionFailure

if TYPE_CHECKING:
    from .analyzer import ConfigFile

logger = logging.getLogger(__name__)

MAX_MANIFEST_BYTES = 1_000_000

RANGE_MARKERS = re.compile(r"^[\^~]+")
PINNED_REQUIREMENT = re.compile(
    r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*==\s*([A-Za-z0-9.+!_-]+)"
)


@dataclass
class DependencyRecord:
    name: str
    version: str
    type: str  # runtime | dev
    manager: str  # npm | pip
    manifest: str  # relative path of the declaring manifest

    def to_dict(self) -> dict:
        return asdict(self)


def strip_range_markers(version: str) -> str:
    """``^1.2.3`` -> ``1.2.3``, ``~0.4`` -> ``0.4``."""
    return RANGE_MARKERS.sub("", version.strip())


def parse_package_json(content: str, manifest: str) -> list[DependencyRecord]:
    try:
        pkg = json.loads(content)
    except (json.JSONDecodeError, ValueError) as e:
        raise PartialExtractionFailure(manifest, str(e)) from e
    if not isinstance(pkg, dict):
        raise PartialExtractionFailure(manifest, "top level is not an object")

    records = []
    for section, dep_type in (("dependencies", "runtime"), ("devDependencies", "dev")):
        deps = pkg.get(section) or {}
        if not isinstance(deps, dict):
            raise PartialExtractionFailure(manifest, f"{section} is not an object")
        for name, version in deps.items():
            records.append(DependencyRecord(
                name=name,
                version=strip_range_markers(str(version)),
                type=dep_type,
                manager="npm",
                manifest=manifest,
            ))
    return records


def parse_requirements_txt(content: str, manifest: str) -> list[DependencyRecord]:
    records = []
    for line in content.splitlines():
        match = PINNED_REQUIREMENT.match(line)
        if match:
            records.append(DependencyRecord(
                name=match.group(1),
                version=match.group(2),
                type="runtime",
                manager="pip",
                manifest=manifest,
            ))
    return records


MANIFEST_PARSERS: dict[str, Callable[[str, str], list[DependencyRecord]]] = {
    "package.json": parse_package_json,
    "requirements.txt": parse_requirements_txt,
}


def extract_dependencies(root: str | Path, config_files: Iterable["ConfigFile"]) -> list[DependencyRecord]:
    """Concatenate dependency records from every recognized manifest."""
    root = Path(root)
    dependencies: list[DependencyRecord] = []

    for cfg in config_files:
        parser = MANIFEST_PARSERS.get(cfg.name)
        if parser is None:
            continue
        try:
            content = _read_manifest(root / cfg.path, cfg.path)
            dependencies.extend(parser(content, cfg.path))
        except PartialExtractionFailure as e:
            logger.warning(f"{e.message}, skipping its dependencies: {e.diagnostic}")

    return dependencies


def _read_manifest(path: Path, manifest: str) -> str:
    try:
        if not stat.S_ISREG(os.lstat(path).st_mode):
            raise PartialExtractionFailure(manifest, "not a regular file")
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read(MAX_MANIFEST_BYTES)
    except OSError as e:
        raise PartialExtractionFailure(manifest, str(e)) from e
