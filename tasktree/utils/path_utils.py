"""Materialized path helpers for TaskTree.

A hierarchy path is the ``/``-joined chain of task ids from the root down to
and including the task itself, e.g. ``"<root>/<child>/<grandchild>"``.
"""

from typing import List, Optional

PATH_SEPARATOR = "/"


def build_path(parent_path: Optional[str], task_id: str) -> str:
    """
    Build the hierarchy path for a task.

    Args:
        parent_path: Path of the parent task, or None for a root task
        task_id: Id of the task itself

    Returns:
        Parent path with the task id appended (or just the id for roots)

    Examples:
        >>> build_path(None, "a")
        'a'
        >>> build_path("a/b", "c")
        'a/b/c'
    """
    if not parent_path:
        return str(task_id)
    return f"{parent_path}{PATH_SEPARATOR}{task_id}"


def split_path(path: str) -> List[str]:
    """Split a hierarchy path into its ordered ids (root first)."""
    if not path:
        return []
    return path.split(PATH_SEPARATOR)


def path_depth(path: str) -> int:
    """Return the hierarchy level encoded by a path (root = 0)."""
    return len(split_path(path)) - 1


def descendant_prefix(path: str) -> str:
    """Return the prefix every strict descendant's path starts with."""
    return f"{path}{PATH_SEPARATOR}"


def is_same_or_descendant_path(path: str, ancestor_path: str) -> bool:
    """
    Check whether ``path`` is ``ancestor_path`` itself or lies beneath it.

    This is a prefix comparison on the materialized path, so no parent
    links need to be walked.

    Examples:
        >>> is_same_or_descendant_path("a/b/c", "a/b")
        True
        >>> is_same_or_descendant_path("a/bc", "a/b")
        False
    """
    return path == ancestor_path or path.startswith(descendant_prefix(ancestor_path))


def rebase_path(path: str, old_prefix: str, new_prefix: str) -> str:
    """
    Replace the ``old_prefix`` at the start of ``path`` with ``new_prefix``.

    Raises:
        ValueError: If ``path`` is not ``old_prefix`` or beneath it
    """
    if not is_same_or_descendant_path(path, old_prefix):
        raise ValueError(f"Path '{path}' is not under '{old_prefix}'")
    return new_prefix + path[len(old_prefix):]


def remove_segment(path: str, task_id: str) -> str:
    """Remove one id from a path, splicing its children up one level."""
    return PATH_SEPARATOR.join(
        segment for segment in split_path(path) if segment != str(task_id)
    )
