import os
from pathlib import Path

import pytest

from weavr.service.fs import PathTraversalError, safe_join, truncate_text


def test_safe_join_accepts_child_path(tmp_path: Path):
    result = safe_join(tmp_path, "notes/today.md")

    assert tmp_path.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("notes", "..", "..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/etc/passwd")))


@pytest.mark.parametrize(
    "limit,expected",
    [(None, "abcdef"), (0, "abcdef"), (3, "abc"), (10, "abcdef")],
)
def test_truncate_text(limit, expected):
    assert truncate_text("abcdef", limit) == expected
