"""Live filesystem listing for the reconciliation engine."""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from dirledger.exceptions import CycleDetectedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """A regular file observed in a directory listing.

    ``size`` and ``mtime_ns`` are None when the file could not be stat'ed.
    """

    name: str
    path: Path
    size: int | None
    mtime_ns: int | None


@dataclass
class DirectoryListing:
    """Regular files and subdirectory names of one live directory.

    ``undecodable`` holds entries whose names are not valid UTF-8; they
    cannot be recorded in the ledger and are left out of ``files`` and
    ``subdirs``.
    """

    path: Path
    rel_parts: tuple[str, ...]
    files: list[FileEntry] = field(default_factory=list)
    subdirs: list[str] = field(default_factory=list)
    undecodable: list[Path] = field(default_factory=list)


class TreeWalker:
    """Lists directories under a root, refusing to enter a physical directory twice.

    Physical identity is (st_dev, st_ino), so a symlink loop or a bind mount
    pointing back up the tree raises CycleDetectedError instead of recursing
    forever. One walker is used per scan.
    """

    def __init__(
        self,
        root: Path,
        *,
        follow_symlinks: bool = False,
        skip_hidden: bool = True,
        include_globs: list[str] | None = None,
        exclude_globs: list[str] | None = None,
    ) -> None:
        self.root = root
        self.follow_symlinks = follow_symlinks
        self.skip_hidden = skip_hidden
        self.include_globs = list(include_globs or [])
        self.exclude_globs = list(exclude_globs or [])
        self._visited: set[tuple[int, int]] = set()

    def _matches(self, rel: str, name: str, patterns: list[str]) -> bool:
        return any(
            fnmatch.fnmatchcase(rel, pattern) or fnmatch.fnmatchcase(name, pattern)
            for pattern in patterns
        )

    def is_selected_file(self, rel: str, name: str) -> bool:
        """Return True if a file at root-relative POSIX path ``rel`` is tracked."""
        if self.skip_hidden and name.startswith("."):
            return False
        if self.exclude_globs and self._matches(rel, name, self.exclude_globs):
            return False
        if self.include_globs:
            return self._matches(rel, name, self.include_globs)
        return True

    def is_selected_dir(self, rel: str, name: str) -> bool:
        if self.skip_hidden and name.startswith("."):
            return False
        return not (self.exclude_globs and self._matches(rel, name, self.exclude_globs))

    def list_directory(self, rel_parts: tuple[str, ...]) -> DirectoryListing:
        """List one directory given its segments relative to the root.

        Raises CycleDetectedError if the directory was already listed by this
        walker, and OSError if it cannot be read.
        """
        path = self.root.joinpath(*rel_parts)
        st = path.stat()
        key = (st.st_dev, st.st_ino)
        if key in self._visited:
            raise CycleDetectedError(path)
        self._visited.add(key)

        listing = DirectoryListing(path=path, rel_parts=rel_parts)
        with os.scandir(path) as it:
            entries = sorted(it, key=lambda e: e.name)

        for entry in entries:
            try:
                entry.name.encode("utf-8")
            except UnicodeEncodeError:
                logger.warning("Skipping %r: name is not valid UTF-8", entry.path)
                listing.undecodable.append(Path(entry.path))
                continue
            rel = str(PurePosixPath(*rel_parts, entry.name))
            try:
                is_dir = entry.is_dir(follow_symlinks=self.follow_symlinks)
                is_file = not is_dir and entry.is_file(follow_symlinks=self.follow_symlinks)
            except OSError as exc:
                logger.warning("Cannot determine type of %s: %s", entry.path, exc)
                continue

            if is_dir:
                if self.is_selected_dir(rel, entry.name):
                    listing.subdirs.append(entry.name)
            elif is_file:
                if not self.is_selected_file(rel, entry.name):
                    continue
                try:
                    file_stat = entry.stat(follow_symlinks=self.follow_symlinks)
                    size: int | None = file_stat.st_size
                    mtime_ns: int | None = file_stat.st_mtime_ns
                except OSError as exc:
                    logger.warning("Cannot stat %s: %s", entry.path, exc)
                    size = mtime_ns = None
                listing.files.append(
                    FileEntry(name=entry.name, path=Path(entry.path), size=size, mtime_ns=mtime_ns)
                )

        return listing
