"""Gzip payload storage addressed by content fingerprint."""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import tempfile
from typing import TYPE_CHECKING

from dirledger.exceptions import NotFoundError, UnreadableContentError
from dirledger.services.fingerprint_service import CHUNK_SIZE, get_format

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class BlobStore:
    """Stores one gzip-compressed payload per fingerprint under ``root``.

    Blobs are sharded by the first two characters of their file-safe name.
    Writes go to a temporary file that is linked into place, so a blob is
    either complete or absent.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @staticmethod
    def blob_name(fingerprint: str) -> str:
        """Map a fingerprint to a file-safe name (base64 may contain ``/`` and ``+``)."""
        if not fingerprint:
            raise ValueError("Empty fingerprint")
        return fingerprint.replace("/", "_").replace("+", "-").rstrip("=")

    def path_for(self, fingerprint: str) -> Path:
        name = self.blob_name(fingerprint)
        return self.root / name[:2] / f"{name}.gz"

    def exists(self, fingerprint: str) -> bool:
        return self.path_for(fingerprint).is_file()

    def put(self, fingerprint: str, source: Path, version: int) -> bool:
        """Store ``source`` under ``fingerprint``, verifying the content on the way.

        The payload is fingerprinted in format ``version`` while it is copied;
        if the file changed since it was fingerprinted, nothing is stored and
        UnreadableContentError is raised. Returns False if the blob already
        existed.
        """
        target = self.path_for(fingerprint)
        if target.is_file():
            return False
        target.parent.mkdir(parents=True, exist_ok=True)

        fmt = get_format(version)
        hasher = fmt.new_hasher()
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as raw, gzip.GzipFile(
                fileobj=raw, mode="wb", compresslevel=9
            ) as gz:
                try:
                    with open(source, "rb") as src:
                        for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                            hasher.update(chunk)
                            gz.write(chunk)
                except OSError as exc:
                    raise UnreadableContentError(f"Cannot read {source}: {exc}") from exc
            if fmt.encode(hasher.digest()) != fingerprint:
                raise UnreadableContentError(f"{source} changed while it was being stored")
            # Linking never replaces, so concurrent writers of one blob store it once.
            try:
                os.link(tmp_name, target)
            except FileExistsError:
                return False
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
        logger.debug("Stored blob %s from %s", target.name, source)
        return True

    def get(self, fingerprint: str) -> bytes:
        """Return the decompressed payload, raising NotFoundError if absent."""
        target = self.path_for(fingerprint)
        try:
            with gzip.open(target, "rb") as gz:
                return gz.read()
        except FileNotFoundError:
            raise NotFoundError(f"No blob stored for {fingerprint}") from None

    def restore(self, fingerprint: str, destination: Path) -> None:
        """Write the payload for ``fingerprint`` to ``destination``."""
        target = self.path_for(fingerprint)
        if not target.is_file():
            raise NotFoundError(f"No blob stored for {fingerprint}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(target, "rb") as gz, open(destination, "wb") as out:
            shutil.copyfileobj(gz, out)

    def delete(self, fingerprint: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""
        try:
            self.path_for(fingerprint).unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted blob for %s", fingerprint)
        return True
