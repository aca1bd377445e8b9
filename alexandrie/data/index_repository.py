"""
Git-backed registry index.

The index is a plain git working copy that Cargo clients clone. Every
mutation rewrites one crate file and records exactly one commit touching only
that file. All git work goes through the `git` command line.

Methods are blocking; async callers run them with `asyncio.to_thread`.
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from alexandrie.domain.crate_utils import index_path
from alexandrie.domain.errors import (
    GitCommandError,
    IndexCommitFailed,
    IndexCrateNotFound,
    IndexRepositoryError,
    IndexVersionExists,
)
from alexandrie.domain.models import IndexEntry, RegistryIndexConfig
from alexandrie.domain.versions import VersionReq, parse_version

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

_YANKED_RE = re.compile(r'"yanked"\s*:\s*(true|false)')


@dataclass(frozen=True)
class IndexChange:
    """A committed change to one crate file, enough to undo it."""

    name: str
    vers: str
    path: str
    previous: Optional[bytes]
    commit: str


class IndexRepository:
    def __init__(
        self,
        path: Path,
        remote_url: Optional[str] = None,
        author_name: str = "Alexandrie",
        author_email: str = "alexandrie@localhost",
    ):
        self.path = Path(path)
        self.remote_url = remote_url
        self.author_name = author_name
        self.author_email = author_email
        self._lock = threading.Lock()

        if not (self.path / ".git").exists():
            raise IndexRepositoryError(f"{self.path} is not a git repository")

    @classmethod
    def init(
        cls,
        path: Path,
        config: RegistryIndexConfig,
        remote_url: Optional[str] = None,
        author_name: str = "Alexandrie",
        author_email: str = "alexandrie@localhost",
    ) -> "IndexRepository":
        """
        Create a new index repository at `path` with `config.json` committed.
        """
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        subprocess.run(["git", "init", "-q"], cwd=path, check=True, capture_output=True)

        repo = cls(path, remote_url=remote_url, author_name=author_name, author_email=author_email)
        (path / CONFIG_FILE).write_text(config.to_json(), encoding="utf-8")
        repo._git("add", "--", CONFIG_FILE)
        repo._git("commit", "-q", "-m", "Initial commit")
        if remote_url:
            repo._git("remote", "add", "origin", remote_url)
        logger.info(f"Initialized registry index at {path}")
        return repo

    # ------------------------------------------------------------------
    # git plumbing
    # ------------------------------------------------------------------

    def _git(self, *args: str) -> str:
        cmd = [
            "git",
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "-c", "commit.gpgsign=false",
            *args,
        ]
        result = subprocess.run(cmd, cwd=self.path, capture_output=True, text=True)
        if result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr)
        return result.stdout

    def _head(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def _commit_file(self, rel: str, message: str, previous: Optional[bytes]) -> str:
        """
        Stage and commit one file. On failure the file is put back to
        `previous` (removed when None) and unstaged.
        """
        try:
            if (self.path / rel).exists():
                self._git("add", "--", rel)
            else:
                self._git("rm", "-q", "--cached", "--", rel)
            self._git("commit", "-q", "-m", message, "--", rel)
        except GitCommandError as e:
            logger.error(f"Index commit '{message}' failed: {e}")
            self._restore(rel, previous)
            raise IndexCommitFailed(str(e)) from e

        commit = self._head()
        logger.info(f"Committed '{message}' to the index as {commit[:12]}")
        self._push()
        return commit

    def _restore(self, rel: str, previous: Optional[bytes]) -> None:
        target = self.path / rel
        try:
            self._git("reset", "-q", "--", rel)
        except GitCommandError as e:
            logger.error(f"Failed to unstage {rel}: {e}")
        if previous is None:
            target.unlink(missing_ok=True)
        else:
            target.write_bytes(previous)

    def _push(self) -> None:
        if not self.remote_url:
            return
        try:
            self._git("push", "-q", "origin", "HEAD")
        except GitCommandError as e:
            # The local commit stays authoritative; the next push carries it.
            logger.warning(f"Failed to push the index to {self.remote_url}: {e}")

    def _read(self, rel: str) -> Optional[bytes]:
        target = self.path / rel
        if not target.exists():
            return None
        return target.read_bytes()

    def _write(self, rel: str, content: bytes) -> None:
        target = self.path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_or_update_line(self, entry: IndexEntry) -> IndexChange:
        """
        Append `entry` to its crate file and commit it.

        Raises IndexVersionExists when the file already has a line for
        `entry.vers`, and IndexCommitFailed when git refuses the commit (the
        file is left as it was).
        """
        rel = index_path(entry.name)
        with self._lock:
            previous = self._read(rel)
            text = previous.decode("utf-8") if previous is not None else ""

            for line in text.splitlines():
                if line.strip() and IndexEntry.from_line(line).vers == entry.vers:
                    raise IndexVersionExists(f"{entry.name}#{entry.vers} is already in the index")

            if text and not text.endswith("\n"):
                text += "\n"
            text += entry.to_line() + "\n"

            action = "Adding" if previous is None else "Updating"
            message = f"{action} crate '{entry.name}#{entry.vers}'"

            self._write(rel, text.encode("utf-8"))
            commit = self._commit_file(rel, message, previous)
            return IndexChange(entry.name, entry.vers, rel, previous, commit)

    def modify_yank(self, name: str, vers: str, yanked: bool) -> bool:
        """
        Set the `yanked` flag of one line and commit.

        Returns False without committing when the flag already has that value.
        """
        rel = index_path(name)
        with self._lock:
            previous = self._read(rel)
            if previous is None:
                raise IndexCrateNotFound(f"crate '{name}' is not in the index")

            lines = previous.decode("utf-8").splitlines(keepends=True)
            for i, raw in enumerate(lines):
                body = raw.rstrip("\r\n")
                if not body.strip():
                    continue
                current = IndexEntry.from_line(body)
                if current.vers != vers:
                    continue
                if current.yanked == yanked:
                    return False
                lines[i] = _set_yanked(body, yanked) + raw[len(body):]
                break
            else:
                raise IndexCrateNotFound(f"version '{vers}' of crate '{name}' is not in the index")

            action = "Yanking" if yanked else "Unyanking"
            self._write(rel, "".join(lines).encode("utf-8"))
            self._commit_file(rel, f"{action} crate '{name}#{vers}'", previous)
            return True

    def revert(self, change: IndexChange, message: Optional[str] = None) -> str:
        """
        Put a crate file back to its content before `change` and commit that.
        """
        message = message or f"Reverting crate '{change.name}#{change.vers}'"
        with self._lock:
            current = self._read(change.path)
            if change.previous is None:
                (self.path / change.path).unlink(missing_ok=True)
            else:
                self._write(change.path, change.previous)
            return self._commit_file(change.path, message, current)

    def refresh(self) -> None:
        """Fast-forward from the upstream remote; no-op without one."""
        if not self.remote_url:
            return
        with self._lock:
            self._git("pull", "-q", "--ff-only", "origin", "HEAD")
        logger.info(f"Refreshed the index from {self.remote_url}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def url(self) -> Optional[str]:
        return self.remote_url

    def config(self) -> RegistryIndexConfig:
        with self._lock:
            content = self._read(CONFIG_FILE)
        if content is None:
            raise IndexRepositoryError(f"{CONFIG_FILE} is missing from the index")
        return RegistryIndexConfig.model_validate_json(content)

    def raw_file(self, name: str) -> bytes:
        with self._lock:
            content = self._read(index_path(name))
        if content is None:
            raise IndexCrateNotFound(f"crate '{name}' is not in the index")
        return content

    def all_records(self, name: str) -> List[IndexEntry]:
        content = self.raw_file(name).decode("utf-8")
        return [IndexEntry.from_line(line) for line in content.splitlines() if line.strip()]

    def latest_record(self, name: str) -> IndexEntry:
        records = self.all_records(name)
        if not records:
            raise IndexCrateNotFound(f"crate '{name}' has no versions in the index")
        return max(records, key=lambda r: parse_version(r.vers))

    def match_record(self, name: str, req: str | VersionReq) -> Optional[IndexEntry]:
        """Highest version of `name` matching the requirement `req`, if any."""
        if isinstance(req, str):
            req = VersionReq.parse(req)
        candidates = [r for r in self.all_records(name) if req.matches(r.vers)]
        if not candidates:
            return None
        return max(candidates, key=lambda r: parse_version(r.vers))


def _set_yanked(line: str, yanked: bool) -> str:
    value = "true" if yanked else "false"
    matches = list(_YANKED_RE.finditer(line))
    if len(matches) == 1:
        m = matches[0]
        return line[: m.start(1)] + value + line[m.end(1):]
    # Unusual layout: fall back to re-serializing the entry.
    entry = IndexEntry.from_line(line)
    entry.yanked = yanked
    return entry.to_line()
