"""Utility functions for Tessera.

Key functions:
    slugify: Convert filenames to URL slugs.
    titleize: Convert filenames to human-readable titles.
    content_hash: Stable digest used for skip-if-unchanged writes.
    is_markdown: Check if a path is a Markdown file.
    is_html: Check if a path is a plain HTML file.
    is_ignored_name: Check if a path component marks a draft or hidden file.
    relative_to: Relative POSIX path of a file under a root, or None.
    ensure_clean_dir: Ensure a directory exists and is empty.
    git_revision: Short commit hash of a checkout, if any.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import subprocess
from pathlib import Path, PurePosixPath


_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}-(?=.)")


def _undated(stem: str) -> str:
    return _DATE_PREFIX.sub("", stem)


def slugify(name: str) -> str:
    """Turn a file stem into a lowercase URL slug.

    A leading ``YYYY-MM-DD-`` date is dropped; an empty result becomes
    ``index``.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", _undated(name).lower()).strip("-")
    return slug or "index"


def titleize(filename: str) -> str:
    """Derive a display title from a file name.

    Examples:
        >>> titleize("2024-01-15-hello-world.md")
        'Hello World'

        >>> titleize("getting_started.md")
        'Getting Started'
    """
    words = [word for word in re.split(r"[\s_-]+", _undated(Path(filename).stem)) if word]
    return " ".join(word.capitalize() for word in words) or "Untitled"


def content_hash(data: bytes) -> str:
    """Return the SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def file_hash(path: Path) -> str | None:
    """Return the digest of a file's bytes, or None if it cannot be read."""
    try:
        return content_hash(path.read_bytes())
    except OSError:
        return None


def is_markdown(path: Path) -> bool:
    """Check if a path is a Markdown file (case-insensitive .md)."""
    return path.suffix.lower() in (".md", ".markdown")


def is_html(path: Path) -> bool:
    """Check if a path is a plain HTML content file."""
    return path.suffix.lower() in (".html", ".htm")


def is_content_file(path: Path) -> bool:
    return is_markdown(path) or is_html(path)


def is_ignored_name(name: str) -> bool:
    """Drafts start with ``_``; dotfiles and editor backups are never sources."""
    return name.startswith(("_", ".")) or name.endswith("~")


def relative_to(path: Path, root: Path) -> PurePosixPath | None:
    """Return *path* relative to *root* as a POSIX path, or None if outside it."""
    try:
        return PurePosixPath(path.relative_to(root).as_posix())
    except ValueError:
        return None


def ensure_clean_dir(path: Path) -> None:
    """Create *path* as an empty directory, removing whatever it held."""
    if path.is_dir():
        for child in path.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
    else:
        path.mkdir(parents=True, exist_ok=True)


def git_revision(root: Path) -> str:
    """Return the short commit hash of the git checkout at *root*.

    Returns an empty string when git is not installed or *root* is not
    inside a repository.
    """
    git_bin = shutil.which("git")
    if not git_bin:
        return ""
    try:
        completed = subprocess.run(
            [git_bin, "rev-parse", "--short", "HEAD"],
            cwd=root,
            check=True,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    return completed.stdout.strip()
