"""Tests for the top-level ignore snapshot and the default ignore rules."""

import pytest

from pack_watch import (
    IgnoreEntry,
    IgnoreMatcher,
    SetupError,
    load_ignored_top_paths,
    parse_ignore_top_layer,
)


class TestParseIgnoreTopLayer:
    def test_strips_trailing_separator_and_wildcard(self, tmp_path):
        text = "build/\ncoverage/*\nnotes.txt\n"
        assert parse_ignore_top_layer(text, tmp_path) == [
            tmp_path / "build",
            tmp_path / "coverage",
            tmp_path / "notes.txt",
        ]

    def test_skips_blank_and_nested_lines(self, tmp_path):
        text = "\n   \nsrc/generated\nlib/cache/*\ndist\n"
        assert parse_ignore_top_layer(text, tmp_path) == [tmp_path / "dist"]

    def test_first_line_counts(self, tmp_path):
        assert parse_ignore_top_layer("only", tmp_path) == [tmp_path / "only"]

    def test_crlf_lines(self, tmp_path):
        assert parse_ignore_top_layer("a\r\nb/\r\n", tmp_path) == [tmp_path / "a", tmp_path / "b"]


class TestLoadIgnoredTopPaths:
    async def test_prefers_npmignore(self, repo, logger):
        (repo / "build").mkdir()
        (repo / "docs").mkdir()
        (repo / ".npmignore").write_text("build/\n", encoding="utf-8")
        (repo / ".gitignore").write_text("docs/\n", encoding="utf-8")

        entries = await load_ignored_top_paths(repo, logger)

        assert {e.path for e in entries} == {repo / "build"}

    async def test_falls_back_to_gitignore(self, repo, logger):
        (repo / "docs").mkdir()
        (repo / ".gitignore").write_text("docs\n", encoding="utf-8")

        entries = await load_ignored_top_paths(repo, logger)

        assert {e.path for e in entries} == {repo / "docs"}

    async def test_no_ignore_file_is_empty(self, repo, logger):
        assert await load_ignored_top_paths(repo, logger) == frozenset()

    async def test_missing_candidates_are_dropped(self, repo, logger):
        (repo / "build").mkdir()
        (repo / ".npmignore").write_text("build/\nnever-made\n*.log\n", encoding="utf-8")

        entries = await load_ignored_top_paths(repo, logger)

        assert [e.path for e in entries] == [repo / "build"]
        (entry,) = entries
        assert entry.stat.st_mode

    async def test_unreadable_ignore_file_is_setup_error(self, repo, logger):
        # readable as a path, but reading it as text fails
        (repo / ".npmignore").mkdir()

        with pytest.raises(SetupError):
            await load_ignored_top_paths(repo, logger)


class TestIgnoreMatcher:
    def test_hidden_entries_at_any_depth(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path)
        assert matcher.is_ignored(tmp_path / ".git", is_dir=True)
        assert matcher.is_ignored(tmp_path / ".git" / "config")
        assert matcher.is_ignored(tmp_path / "lib" / ".cache" / "x.js")
        assert not matcher.is_ignored(tmp_path / "lib" / "index.js")

    def test_node_modules(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path)
        assert matcher.is_ignored(tmp_path / "node_modules", is_dir=True)
        assert matcher.is_ignored(tmp_path / "node_modules" / "dep" / "index.js")

    def test_nested_node_modules_is_mirrored(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path)
        assert not matcher.is_ignored(tmp_path / "lib" / "node_modules", is_dir=True)
        assert not matcher.is_ignored(tmp_path / "lib" / "node_modules" / "x.js")
        assert not matcher.is_ignored(tmp_path / "node_modules.js")

    def test_snapshot_excludes_whole_top_level_entry(self, tmp_path):
        (tmp_path / "build").mkdir()
        entry = IgnoreEntry(path=tmp_path / "build", stat=(tmp_path / "build").lstat())
        matcher = IgnoreMatcher(tmp_path, ignored_top=[entry])

        assert matcher.is_ignored(tmp_path / "build", is_dir=True)
        assert matcher.is_ignored(tmp_path / "build" / "out" / "bundle.js")
        assert not matcher.is_ignored(tmp_path / "builder.js")

    def test_paths_outside_root_are_ignored(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path / "repo")
        assert matcher.is_ignored(tmp_path / "elsewhere.js")

    def test_entries_compare_by_path(self, tmp_path):
        st = tmp_path.lstat()
        assert IgnoreEntry(tmp_path, st) == IgnoreEntry(tmp_path, tmp_path.stat())
        assert len({IgnoreEntry(tmp_path, st), IgnoreEntry(tmp_path, st)}) == 1
