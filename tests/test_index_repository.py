import json
import os

import pytest

from conftest import run_git
from alexandrie.data.index_repository import IndexRepository
from alexandrie.domain.errors import (
    IndexCommitFailed,
    IndexCrateNotFound,
    IndexRepositoryError,
    IndexVersionExists,
)
from alexandrie.domain.models import IndexDependency, IndexEntry


def entry(name="demo", vers="0.1.0", **kwargs):
    return IndexEntry(name=name, vers=vers, cksum="0" * 64, **kwargs)


def last_subject(repo):
    return run_git(repo.path, "log", "-1", "--format=%s").strip()


def commit_count(repo):
    return int(run_git(repo.path, "rev-list", "--count", "HEAD").strip())


def install_failing_hook(repo):
    hook = repo.path / ".git" / "hooks" / "pre-commit"
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text("#!/bin/sh\nexit 1\n")
    os.chmod(hook, 0o755)
    return hook


class TestInit:
    def test_config_is_committed(self, index_repo):
        config = index_repo.config()
        assert config.dl.endswith("/{crate}/{version}/download")
        assert config.api == "http://localhost:3000"
        assert last_subject(index_repo) == "Initial commit"
        assert json.loads((index_repo.path / "config.json").read_text())["api"] == "http://localhost:3000"

    def test_refuses_plain_directory(self, tmp_path):
        with pytest.raises(IndexRepositoryError):
            IndexRepository(tmp_path)


class TestAddOrUpdateLine:
    def test_new_crate(self, index_repo):
        change = index_repo.add_or_update_line(entry())

        path = index_repo.path / "de" / "mo" / "demo"
        assert path.read_text() == entry().to_line() + "\n"
        assert change.previous is None
        assert change.path == "de/mo/demo"
        assert last_subject(index_repo) == "Adding crate 'demo#0.1.0'"
        assert run_git(index_repo.path, "show", "--name-only", "--format=", "HEAD").split() == ["de/mo/demo"]

    def test_appends_in_publish_order(self, index_repo):
        index_repo.add_or_update_line(entry(vers="0.2.0"))
        change = index_repo.add_or_update_line(entry(vers="0.1.0"))

        lines = (index_repo.path / "de" / "mo" / "demo").read_text().splitlines()
        assert [IndexEntry.from_line(line).vers for line in lines] == ["0.2.0", "0.1.0"]
        assert change.previous == (entry(vers="0.2.0").to_line() + "\n").encode()
        assert last_subject(index_repo) == "Updating crate 'demo#0.1.0'"

    def test_short_names(self, index_repo):
        for name in ("a", "ab", "abc"):
            index_repo.add_or_update_line(entry(name=name))
        assert (index_repo.path / "1" / "a").exists()
        assert (index_repo.path / "2" / "ab").exists()
        assert (index_repo.path / "3" / "a" / "abc").exists()

    def test_duplicate_version(self, index_repo):
        index_repo.add_or_update_line(entry())
        before = commit_count(index_repo)
        with pytest.raises(IndexVersionExists):
            index_repo.add_or_update_line(entry())
        assert commit_count(index_repo) == before
        assert len((index_repo.path / "de" / "mo" / "demo").read_text().splitlines()) == 1

    def test_failed_commit_restores_new_file(self, index_repo):
        install_failing_hook(index_repo)
        with pytest.raises(IndexCommitFailed):
            index_repo.add_or_update_line(entry())
        assert not (index_repo.path / "de" / "mo" / "demo").exists()
        assert run_git(index_repo.path, "status", "--porcelain").strip() == ""

    def test_failed_commit_restores_existing_file(self, index_repo):
        index_repo.add_or_update_line(entry())
        path = index_repo.path / "de" / "mo" / "demo"
        before = path.read_bytes()

        install_failing_hook(index_repo)
        with pytest.raises(IndexCommitFailed):
            index_repo.add_or_update_line(entry(vers="0.2.0"))
        assert path.read_bytes() == before
        assert run_git(index_repo.path, "status", "--porcelain").strip() == ""


class TestModifyYank:
    def test_yank_then_unyank_is_identity(self, index_repo):
        index_repo.add_or_update_line(entry(vers="0.1.0"))
        index_repo.add_or_update_line(entry(vers="0.2.0", deps=[IndexDependency(name="serde", req="^1")]))
        path = index_repo.path / "de" / "mo" / "demo"
        original = path.read_bytes()

        assert index_repo.modify_yank("demo", "0.1.0", True) is True
        assert last_subject(index_repo) == "Yanking crate 'demo#0.1.0'"
        yanked_lines = path.read_text().splitlines()
        assert IndexEntry.from_line(yanked_lines[0]).yanked is True
        assert yanked_lines[1] == original.decode().splitlines()[1]

        assert index_repo.modify_yank("demo", "0.1.0", False) is True
        assert last_subject(index_repo) == "Unyanking crate 'demo#0.1.0'"
        assert path.read_bytes() == original

    def test_no_change_no_commit(self, index_repo):
        index_repo.add_or_update_line(entry())
        before = commit_count(index_repo)
        assert index_repo.modify_yank("demo", "0.1.0", False) is False
        assert commit_count(index_repo) == before

    def test_unknown_crate_or_version(self, index_repo):
        with pytest.raises(IndexCrateNotFound):
            index_repo.modify_yank("nope", "0.1.0", True)
        index_repo.add_or_update_line(entry())
        with pytest.raises(IndexCrateNotFound):
            index_repo.modify_yank("demo", "9.9.9", True)

    def test_keeps_missing_trailing_newline(self, index_repo):
        index_repo.add_or_update_line(entry())
        path = index_repo.path / "de" / "mo" / "demo"
        path.write_text(entry().to_line())
        run_git(index_repo.path, "-c", "user.name=t", "-c", "user.email=t@t", "commit", "-q", "-am", "strip newline")

        index_repo.modify_yank("demo", "0.1.0", True)
        assert not path.read_text().endswith("\n")


class TestRevert:
    def test_revert_new_crate(self, index_repo):
        change = index_repo.add_or_update_line(entry())
        index_repo.revert(change)
        assert not (index_repo.path / "de" / "mo" / "demo").exists()
        assert last_subject(index_repo) == "Reverting crate 'demo#0.1.0'"
        assert run_git(index_repo.path, "status", "--porcelain").strip() == ""

    def test_revert_update(self, index_repo):
        index_repo.add_or_update_line(entry())
        path = index_repo.path / "de" / "mo" / "demo"
        before = path.read_bytes()
        change = index_repo.add_or_update_line(entry(vers="0.2.0"))
        index_repo.revert(change)
        assert path.read_bytes() == before


class TestReads:
    def test_records(self, index_repo):
        for vers in ("0.1.0", "1.0.0", "1.2.0", "2.0.0-beta.1"):
            index_repo.add_or_update_line(entry(vers=vers))

        assert [r.vers for r in index_repo.all_records("Demo")] == ["0.1.0", "1.0.0", "1.2.0", "2.0.0-beta.1"]
        assert index_repo.latest_record("demo").vers == "2.0.0-beta.1"
        assert index_repo.match_record("demo", "^1.0").vers == "1.2.0"
        assert index_repo.match_record("demo", "^3") is None

    def test_raw_file_missing(self, index_repo):
        with pytest.raises(IndexCrateNotFound):
            index_repo.raw_file("missing")

    def test_refresh_without_remote_is_noop(self, index_repo):
        index_repo.refresh()
        assert index_repo.url() is None
