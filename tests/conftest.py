import json
import logging

import pytest


@pytest.fixture
def logger():
    log = logging.getLogger("pack_watch.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def repo(tmp_path):
    """A small package directory with a manifest."""
    root = tmp_path / "repo"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({"name": "my-lib", "version": "1.2.3"}), encoding="utf-8")
    return root


@pytest.fixture
def dest(tmp_path):
    root = tmp_path / "project" / "node_modules" / "my-lib"
    root.mkdir(parents=True)
    return root
