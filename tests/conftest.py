"""Shared fixtures: a real restricted tree under tmp_path, with an outside
directory next to it for symlink escapes."""

import os
import sys

import pytest

GUARD_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, GUARD_ROOT)

from core.confinement import PathConfinementValidator
from core.option_policy import build_policy_table
from models.models import RestrictedRoot, SessionFlags


@pytest.fixture
def tree(tmp_path):
    """<tmp>/sync is the restricted root, <tmp>/outside is off limits."""
    sync = tmp_path / "sync"
    outside = tmp_path / "outside"
    (sync / "docs").mkdir(parents=True)
    (sync / "docs" / "readme.txt").write_text("hi")
    (sync / "photos").mkdir()
    (sync / "photos" / "a.jpg").write_text("a")
    (sync / "photos" / "b.jpg").write_text("b")
    outside.mkdir()
    (outside / "secret.txt").write_text("secret")
    return tmp_path


@pytest.fixture
def root(tree):
    return RestrictedRoot.from_path(str(tree / "sync"))


@pytest.fixture
def outside(tree):
    return os.path.realpath(str(tree / "outside"))


@pytest.fixture
def validator(root):
    return PathConfinementValidator(root)


@pytest.fixture
def plain_flags():
    return SessionFlags.resolve()


@pytest.fixture
def read_only_flags():
    return SessionFlags.resolve(read_only=True)


@pytest.fixture
def table(plain_flags, root):
    return build_policy_table(plain_flags, root)


@pytest.fixture
def fake_rsync(tmp_path):
    """An executable stand-in; the tests inject execv/spawn so it never runs."""
    path = tmp_path / "bin" / "rsync"
    path.parent.mkdir(exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return str(path)
