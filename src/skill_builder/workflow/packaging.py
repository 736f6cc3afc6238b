"""Skill packaging into a distributable ``.skill`` zip."""

from __future__ import annotations

import zipfile
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class PackageResult:
    file_path: Path
    size_bytes: int


def create_skill_zip(skill_dir: Path, output_path: Path) -> PackageResult:
    """Zip ``SKILL.md`` and ``references/``; context and scratch files stay out."""

    if not skill_dir.is_dir():
        raise FileNotFoundError(f"Skill directory not found: {skill_dir}")

    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        skill_md = skill_dir / "SKILL.md"
        if skill_md.is_file():
            archive.write(skill_md, "SKILL.md")
        references_dir = skill_dir / "references"
        if references_dir.is_dir():
            for path in sorted(references_dir.rglob("*")):
                if path.is_file():
                    archive.write(path, path.relative_to(skill_dir).as_posix())

    return PackageResult(file_path=output_path, size_bytes=output_path.stat().st_size)
