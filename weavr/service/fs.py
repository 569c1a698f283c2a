from pathlib import Path


class PathTraversalError(ValueError):
    """A tool or action asked for a path outside its workspace."""


def safe_join(workspace: Path, relative: str) -> Path:
    """Resolve ``relative`` inside ``workspace``, following symlinks.

    Absolute paths are refused outright; anything else must still land inside
    the workspace once ``..`` segments and links are resolved.
    """
    if Path(relative).is_absolute():
        raise PathTraversalError(f"absolute path '{relative}' is not allowed")
    root = workspace.resolve()
    target = root.joinpath(relative).resolve()
    if not target.is_relative_to(root):
        raise PathTraversalError(f"path '{relative}' escapes the workspace")
    return target


def truncate_text(text: str, max_chars: int | None) -> str:
    if not max_chars or max_chars < 0:
        return text
    return text[:max_chars]
