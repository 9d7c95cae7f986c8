"""Tests for configuration, logging and the install step."""

import json
import logging

import pytest

import pack_watch
from pack_watch import (
    APP_NAME,
    AppConfig,
    ColorizingFormatter,
    InstallError,
    SetupError,
    build_config,
    install_package,
    main,
    parse_args,
)


class TestBuildConfig:
    def test_reads_name_from_manifest(self, repo, tmp_path):
        project = tmp_path / "project"
        project.mkdir()

        cfg = build_config(parse_args(["--dir", "../repo"]), cwd=project)

        assert cfg.source_dir == repo
        assert cfg.package_name == "my-lib"
        assert cfg.dest_dir == project / "node_modules" / "my-lib"
        assert not cfg.use_ignore_file

    def test_flags(self, repo, tmp_path):
        args = parse_args(["-d", str(repo), "-i", "-v", "-s", "--module", "other"])

        cfg = build_config(args, cwd=tmp_path)

        assert cfg.use_ignore_file and cfg.verbose and cfg.self_link
        assert cfg.dest_dir == repo / "node_modules" / "other"

    def test_expands_home(self, repo, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))

        cfg = build_config(parse_args(["--dir", "~/repo"]), cwd=tmp_path / "repo")

        assert cfg.source_dir == repo

    def test_missing_manifest(self, tmp_path):
        (tmp_path / "empty").mkdir()

        with pytest.raises(SetupError, match="package.json"):
            build_config(parse_args(["--dir", "empty"]), cwd=tmp_path)

    def test_manifest_without_name(self, tmp_path):
        pkg = tmp_path / "pkg"
        pkg.mkdir()
        (pkg / "package.json").write_text(json.dumps({"version": "1.0.0"}), encoding="utf-8")

        with pytest.raises(SetupError, match='"name"'):
            build_config(parse_args(["--dir", "pkg"]), cwd=tmp_path)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SetupError):
            build_config(parse_args(["--dir", "nope"]), cwd=tmp_path)

    def test_no_install_needs_existing_destination(self, repo, tmp_path):
        with pytest.raises(SetupError, match="does not exist"):
            build_config(parse_args(["--dir", str(repo), "--no-install"]), cwd=tmp_path)


class TestMain:
    def test_without_dir_prints_help(self, capsys):
        assert main([]) == 0
        assert "--dir" in capsys.readouterr().out

    def test_setup_error_exits_1(self, tmp_path):
        assert main(["--dir", str(tmp_path / "missing")]) == 1


class TestFormatter:
    def _record(self, level, msg, **extra):
        record = logging.LogRecord("pack_watch", level, __file__, 1, msg, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_prefixes_tool_name(self):
        fmt = ColorizingFormatter(use_color=False, fmt="%(message)s")

        assert fmt.format(self._record(logging.INFO, "hello")) == f"{APP_NAME}: hello"
        assert fmt.format(self._record(logging.DEBUG, "details")) == f"{APP_NAME}: VERBOSE: details"

    def test_colours_action_and_path(self):
        fmt = ColorizingFormatter(use_color=True, fmt="%(message)s")
        record = self._record(logging.INFO, "COPY | updated lib/a.js", action="COPY", path_text="lib/a.js", is_dir=False)

        out = fmt.format(record)

        assert pack_watch.Ansi.GREEN + "COPY" in out
        assert pack_watch.Ansi.WHITE + "lib/a.js" in out

    def test_errors_are_red(self):
        fmt = ColorizingFormatter(use_color=True, fmt="%(message)s")

        out = fmt.format(self._record(logging.ERROR, "boom"))

        assert out.startswith(pack_watch.Ansi.RED)


class TestInstall:
    async def test_self_link_copies_tree(self, repo, logger):
        (repo / "lib").mkdir()
        (repo / "lib" / "index.js").write_text("x", encoding="utf-8")
        (repo / ".git").mkdir()
        (repo / ".git" / "HEAD").write_text("ref", encoding="utf-8")
        cfg = AppConfig(source_dir=repo, install_dir=repo, package_name="my-lib", self_link=True)

        await install_package(cfg, logger)

        assert (cfg.dest_dir / "lib" / "index.js").read_text(encoding="utf-8") == "x"
        assert (cfg.dest_dir / "package.json").exists()
        assert not (cfg.dest_dir / ".git").exists()
        assert not (cfg.dest_dir / "node_modules").exists()

    async def test_missing_npm(self, repo, tmp_path, logger, monkeypatch):
        monkeypatch.setattr(pack_watch.shutil, "which", lambda name: None)
        cfg = AppConfig(source_dir=repo, install_dir=tmp_path, package_name="my-lib")

        with pytest.raises(InstallError, match="npm"):
            await install_package(cfg, logger)

    async def test_manifest_needs_version(self, tmp_path, logger):
        pkg = tmp_path / "pkg"
        pkg.mkdir()
        (pkg / "package.json").write_text(json.dumps({"name": "pkg"}), encoding="utf-8")
        cfg = AppConfig(source_dir=pkg, install_dir=tmp_path, package_name="pkg")

        with pytest.raises(InstallError, match="version"):
            await install_package(cfg, logger)
