from __future__ import annotations

import os

import pytest

from termide.errors import PathEscapeError
from termide.sandbox_files.policy import (
    DEFAULT_PROJECT,
    project_root,
    resolve,
    sanitize_project_id,
)


def test_sanitize_project_id_replaces_unsafe_chars() -> None:
    assert sanitize_project_id("my app/v2!") == "my-app-v2-"
    assert sanitize_project_id("ok_name-1.0") == "ok_name-1.0"


def test_sanitize_project_id_defaults_when_missing() -> None:
    assert sanitize_project_id("") == DEFAULT_PROJECT
    assert sanitize_project_id(None) == DEFAULT_PROJECT


def test_sanitize_project_id_merges_collisions() -> None:
    assert sanitize_project_id("a b") == sanitize_project_id("a/b") == "a-b"


def test_sanitize_project_id_never_names_a_parent() -> None:
    assert sanitize_project_id("..") == "--"
    assert sanitize_project_id(".") == "-"


def test_project_root_is_under_base(tmp_path) -> None:
    base = str(tmp_path)
    assert project_root("demo", base_dir=base) == os.path.join(base, "demo")
    assert project_root("../etc", base_dir=base) == os.path.join(base, "..-etc")


def test_resolve_joins_relative_path(tmp_path) -> None:
    base = str(tmp_path)
    assert resolve("p", "src/main.py", base_dir=base) == os.path.join(base, "p", "src", "main.py")


def test_resolve_allows_dotdot_that_stays_inside(tmp_path) -> None:
    base = str(tmp_path)
    assert resolve("p", "src/../a.txt", base_dir=base) == os.path.join(base, "p", "a.txt")


def test_resolve_treats_leading_slash_as_relative(tmp_path) -> None:
    base = str(tmp_path)
    assert resolve("p", "/etc/passwd", base_dir=base) == os.path.join(base, "p", "etc", "passwd")


def test_resolve_empty_path_is_the_root(tmp_path) -> None:
    base = str(tmp_path)
    assert resolve("p", "", base_dir=base) == os.path.join(base, "p")


@pytest.mark.parametrize(
    "rel",
    ["..", "../x", "../../etc/passwd", "a/../../x", "./../p2/secret.txt"],
)
def test_resolve_rejects_escape(tmp_path, rel: str) -> None:
    with pytest.raises(PathEscapeError):
        resolve("p", rel, base_dir=str(tmp_path))
    # Pure path algebra: nothing was created.
    assert list(tmp_path.iterdir()) == []


def test_resolve_rejects_sibling_prefix(tmp_path) -> None:
    # "p2" shares the "p" prefix but is a different project.
    with pytest.raises(PathEscapeError):
        resolve("p", "../p2/x.txt", base_dir=str(tmp_path))


def test_resolve_rejects_nul_byte(tmp_path) -> None:
    with pytest.raises(PathEscapeError):
        resolve("p", "a\x00b", base_dir=str(tmp_path))


def test_path_escape_is_a_value_error(tmp_path) -> None:
    with pytest.raises(ValueError):
        resolve("p", "../x", base_dir=str(tmp_path))
