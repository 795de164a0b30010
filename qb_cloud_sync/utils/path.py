"""
Utilities for building rclone remote paths and reasoning about local paths.
"""

from pathlib import Path


def join_remote(remote_name: str, base_path: str, relative_path: str) -> str:
    """
    Builds an rclone destination such as `gdrive:Media/Movies/Alpha (2020)`.

    Args:
        remote_name: The rclone remote, with or without its trailing colon.
        base_path: Upload root on the remote; '/' or '' for the remote root.
        relative_path: Path below the root, as produced by the rule resolver.
    """
    parts = [
        part
        for part in (base_path.strip("/"), relative_path.replace("\\", "/").strip("/"))
        if part
    ]
    return f"{remote_name.rstrip(':')}:{'/'.join(parts)}"


def is_strictly_within(path: Path, root: Path) -> bool:
    """True when `path` lies below `root` without being `root` itself."""
    try:
        relative = path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return relative != Path(".")
