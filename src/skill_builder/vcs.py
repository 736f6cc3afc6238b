"""Git collaborator for the skills output directory (GitPython)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from git import Actor, Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from skill_builder.errors import VcsError

logger = logging.getLogger(__name__)

COMMIT_ACTOR = Actor("Skill Builder", "noreply@skill-builder.app")

DEFAULT_README = """# Skills

Built with Skill Builder.

## Structure

Each skill lives in its own directory:

```
my-skill/
  SKILL.md          # Main skill prompt
  references/       # Supporting reference files
  context/          # Research & decision artifacts (not committed)
```

## Usage

Import a `.skill` file into Skill Builder or copy a skill directory into your project.
"""

DEFAULT_GITIGNORE = """# OS
.DS_Store
Thumbs.db

# Editor
.vscode/
.idea/
*.swp
*.swo

# Skill Builder working files
*.skill
*/context/
"""


class VersionControl(Protocol):
    """What reconciliation and workspace seeding need from version control."""

    def ensure_repo(self, path: Path) -> bool: ...

    def commit_all(self, path: Path, message: str) -> str | None: ...

    def get_untracked_dirs(self, path: Path) -> list[str]: ...


class GitVersionControl:
    """GitPython-backed implementation of :class:`VersionControl`."""

    def ensure_repo(self, path: Path) -> bool:
        """Make ``path`` a git repository with a seeded README and .gitignore.

        Returns ``True`` when a new repository was initialized.
        """

        path.mkdir(parents=True, exist_ok=True)
        created = False
        try:
            repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            repo = Repo.init(path)
            created = True
            logger.info("Initialized skills repository at %s", path)

        seeded: list[str] = []
        for name, content in ((".gitignore", DEFAULT_GITIGNORE), ("README.md", DEFAULT_README)):
            target = path / name
            if not target.exists():
                target.write_text(content, "utf-8")
                seeded.append(name)

        if seeded:
            try:
                repo.index.add(seeded)
                repo.index.commit(
                    "Initialize skill repo with README and .gitignore",
                    author=COMMIT_ACTOR,
                    committer=COMMIT_ACTOR,
                )
            except (GitCommandError, OSError) as error:
                raise VcsError(f"Failed to seed repository at {path}: {error}") from error
        return created

    def commit_all(self, path: Path, message: str) -> str | None:
        """Stage everything and commit; ``None`` when the tree did not change."""

        repo = self._open(path)
        try:
            repo.git.add(A=True)
            index = repo.index
            tree = index.write_tree()
            if repo.head.is_valid():
                if repo.head.commit.tree.hexsha == tree.hexsha:
                    return None
            elif not index.entries:
                return None
            commit = index.commit(message, author=COMMIT_ACTOR, committer=COMMIT_ACTOR)
        except (GitCommandError, OSError, ValueError) as error:
            raise VcsError(f"Failed to commit in {path}: {error}") from error
        logger.info("Committed %s in %s: %s", commit.hexsha[:8], path, message)
        return commit.hexsha

    def get_untracked_dirs(self, path: Path) -> list[str]:
        """Top-level directories holding untracked (and not ignored) files."""

        repo = self._open(path)
        try:
            untracked = repo.untracked_files
        except GitCommandError as error:
            raise VcsError(f"Failed to list untracked files in {path}: {error}") from error
        names = {
            relative.split("/", 1)[0]
            for relative in untracked
            if "/" in relative
        }
        return sorted(name for name in names if not name.startswith("."))

    def _open(self, path: Path) -> Repo:
        try:
            return Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError) as error:
            raise VcsError(f"Not a git repository: {path}") from error
