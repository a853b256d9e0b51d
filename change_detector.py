"""Counts files the agent changed during one loop, using git."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class GitChangeDetector:
    """Change counting for a git working tree.

    ``marker()`` is taken before the agent runs; ``count_changed_files(marker)``
    afterwards counts the union of files committed since the marker, unstaged
    changes and staged changes. Outside a git repository every count is 0.
    """

    def __init__(self, project_path: str | Path, timeout: int = 10) -> None:
        self.project_path = Path(project_path)
        self.timeout = timeout

    def _git(self, *args: str) -> Optional[str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(self.project_path),
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.debug("git %s failed: %s", " ".join(args), e)
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def is_repo(self) -> bool:
        return self._git("rev-parse", "--git-dir") is not None

    def marker(self) -> str:
        """Current HEAD sha, or "" when there is none."""
        head = self._git("rev-parse", "HEAD")
        return head.strip() if head else ""

    def count_changed_files(self, marker: str) -> int:
        if not self.is_repo():
            return 0

        changed: set[str] = set()
        current = self.marker()
        diffs = [("diff", "--name-only"), ("diff", "--name-only", "--cached")]
        if marker and current and marker != current:
            diffs.insert(0, ("diff", "--name-only", marker, current))

        for args in diffs:
            output = self._git(*args)
            if output:
                changed.update(line.strip() for line in output.splitlines() if line.strip())

        logger.debug("Detected %d unique files changed since %s", len(changed), marker[:8] or "start")
        return len(changed)
