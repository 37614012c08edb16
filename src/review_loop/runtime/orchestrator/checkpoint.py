"""Git snapshots of the working tree taken before the fixer runs."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ...io_utils import now_iso
from ..domain.models import RollbackRecord

logger = logging.getLogger(__name__)


class CheckpointError(RuntimeError):
    """Raised when a checkpoint cannot be recorded."""


@dataclass(frozen=True)
class CheckpointHandle:
    """Everything needed to put the repository back.

    Attributes:
        head: Commit HEAD pointed at, or ``None`` in a repository without commits.
        index_tree: Tree of the staging area, so staged/unstaged splits survive.
        snapshot_tree: Tree of the whole working tree including untracked files.
    """

    head: Optional[str]
    index_tree: str
    snapshot_tree: str
    created_at: str = field(default_factory=now_iso)


def _stderr(exc: subprocess.CalledProcessError) -> str:
    text = (exc.stderr or exc.stdout or "").strip()
    return text or f"exit code {exc.returncode}"


class GitCheckpointer:
    """Snapshot and restore the working tree with plumbing commands only.

    Checkpoints never touch the user's index, stash, or branches: the full
    working tree is recorded through a temporary index file. Ignored files are
    neither captured nor restored.
    """

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = Path(project_dir)

    def _git(
        self, *args: str, env: Optional[dict[str, str]] = None, check: bool = True
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=self.project_dir,
            capture_output=True,
            text=True,
            check=check,
            env=env,
        )

    def is_repository(self) -> bool:
        try:
            result = self._git("rev-parse", "--is-inside-work-tree", check=False)
        except OSError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def current_branch(self) -> Optional[str]:
        try:
            result = self._git("branch", "--show-current", check=False)
        except OSError:
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _head(self) -> Optional[str]:
        result = self._git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _snapshot_tree(self) -> str:
        index_path = Path(self._git("rev-parse", "--git-path", "index").stdout.strip())
        if not index_path.is_absolute():
            index_path = self.project_dir / index_path
        fd, tmp_name = tempfile.mkstemp(prefix="review-loop-index-")
        os.close(fd)
        try:
            if index_path.exists():
                shutil.copyfile(index_path, tmp_name)
            else:
                os.unlink(tmp_name)
            env = {**os.environ, "GIT_INDEX_FILE": tmp_name}
            self._git("add", "-A", env=env)
            return self._git("write-tree", env=env).stdout.strip()
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass

    def checkpoint(self) -> CheckpointHandle:
        try:
            head = self._head()
            index_tree = self._git("write-tree").stdout.strip()
            snapshot_tree = self._snapshot_tree()
        except subprocess.CalledProcessError as exc:
            raise CheckpointError(f"git checkpoint failed: {_stderr(exc)}") from exc
        except OSError as exc:
            raise CheckpointError(f"git checkpoint failed: {exc}") from exc
        logger.debug("Checkpoint head=%s index=%s snapshot=%s", head, index_tree, snapshot_tree)
        return CheckpointHandle(head=head, index_tree=index_tree, snapshot_tree=snapshot_tree)

    def rollback(self, handle: CheckpointHandle) -> RollbackRecord:
        """Restore HEAD, working tree, and index to ``handle``.

        Files created after the checkpoint are removed unless ignored.
        """
        try:
            current_head = self._head()
            if handle.head is not None and current_head != handle.head:
                self._git("reset", "--soft", handle.head)
            elif handle.head is None and current_head is not None:
                self._git("update-ref", "-d", "HEAD")
            self._git("read-tree", "-u", "--reset", handle.snapshot_tree)
            self._git("clean", "-fd")
            self._git("read-tree", handle.index_tree)
        except subprocess.CalledProcessError as exc:
            reason = _stderr(exc)
            logger.warning("Rollback to checkpoint failed: %s", reason)
            return RollbackRecord(attempted=True, success=False, reason=reason)
        except OSError as exc:
            logger.warning("Rollback to checkpoint failed: %s", exc)
            return RollbackRecord(attempted=True, success=False, reason=str(exc))
        return RollbackRecord(attempted=True, success=True)
