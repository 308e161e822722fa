"""Content fingerprints, keyed by the format version stored on each ledger row.

Each ``FileVersion.version`` names an entry of ``FINGERPRINT_FORMATS``. Reading
code never assumes the current format: a stored digest is only ever compared
with a digest computed in that row's own format.
"""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from dirledger.exceptions import UnreadableContentError

if TYPE_CHECKING:
    from pathlib import Path

CHUNK_SIZE = 8192


class Hasher(Protocol):
    def update(self, data: bytes, /) -> None: ...

    def digest(self) -> bytes: ...


@dataclass(frozen=True)
class FingerprintFormat:
    """One fingerprint algorithm and its text encoding."""

    version: int
    name: str
    new_hasher: Callable[[], Hasher]
    encode: Callable[[bytes], str]


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


def _hex(digest: bytes) -> str:
    return digest.hex()


FINGERPRINT_FORMATS: dict[int, FingerprintFormat] = {
    1: FingerprintFormat(version=1, name="md5-base64", new_hasher=hashlib.md5, encode=_b64),
    2: FingerprintFormat(version=2, name="sha256-hex", new_hasher=hashlib.sha256, encode=_hex),
}


def register_format(fmt: FingerprintFormat) -> None:
    """Register a fingerprint format under its version number.

    Raises ValueError if the version is already taken by a different format,
    since existing rows would then be read with the wrong algorithm.
    """
    existing = FINGERPRINT_FORMATS.get(fmt.version)
    if existing is not None and existing != fmt:
        raise ValueError(f"Fingerprint format version {fmt.version} is already {existing.name}")
    FINGERPRINT_FORMATS[fmt.version] = fmt


def get_format(version: int) -> FingerprintFormat:
    """Return the format for a version, raising ValueError if unknown."""
    try:
        return FINGERPRINT_FORMATS[version]
    except KeyError:
        raise ValueError(f"Unknown fingerprint format version: {version}") from None


def fingerprint_bytes(data: bytes, version: int) -> str:
    """Fingerprint in-memory content."""
    fmt = get_format(version)
    hasher = fmt.new_hasher()
    hasher.update(data)
    return fmt.encode(hasher.digest())


def fingerprint_file(path: Path, versions: Iterable[int]) -> dict[int, str]:
    """Fingerprint a file in every requested format with a single read pass.

    Raises UnreadableContentError if the file cannot be opened or read.
    """
    formats = [get_format(v) for v in dict.fromkeys(versions)]
    hashers = [fmt.new_hasher() for fmt in formats]
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                for hasher in hashers:
                    hasher.update(chunk)
    except OSError as exc:
        raise UnreadableContentError(f"Cannot read {path}: {exc}") from exc
    return {fmt.version: fmt.encode(h.digest()) for fmt, h in zip(formats, hashers, strict=True)}
