"""
Content-addressed output store.

Copies emitted files into the dist root and records their SHA256. In
production, filenames carry a content hash for long-term caching.
"""
import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


HASH_LENGTH = 12


@dataclass(frozen=True)
class StoredFile:
    """File placed in the dist root."""
    path: str  # posix path relative to the dist root
    sha256: str
    size_bytes: int


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def hashed_name(name: str, sha256: str) -> str:
    """
    Insert a short content hash after the first name component.

    app_bg.wasm -> app_bg.<hash>.wasm, main.js.map -> main.<hash>.js.map
    """
    stem, dot, rest = name.partition(".")
    if not dot:
        return f"{stem}.{sha256[:HASH_LENGTH]}"
    return f"{stem}.{sha256[:HASH_LENGTH]}.{rest}"


def atomic_write_bytes(path: Path, content: bytes):
    """Write to a temp file in the same directory, then replace the target."""
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(temp_fd, 'wb') as f:
            f.write(content)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class OutputStore:
    """Places emitted files under the dist root."""

    def __init__(self, dist_dir: Path):
        """
        Initialize output store.

        Args:
            dist_dir: Dist root served to the browser
        """
        self.dist_dir = Path(dist_dir)
        self.dist_dir.mkdir(parents=True, exist_ok=True)

    def store(self, content: bytes, name: str, subdir: Optional[str] = None, hashed: bool = False) -> StoredFile:
        """
        Store content under the dist root.

        Args:
            content: File content
            name: Logical file name
            subdir: Directory under the dist root (None for the root itself)
            hashed: Use a content-hashed file name

        Returns:
            StoredFile with dist-relative path and SHA256
        """
        sha256 = content_hash(content)
        file_name = hashed_name(name, sha256) if hashed else name
        relative = Path(subdir) / file_name if subdir else Path(file_name)
        destination = self.dist_dir / relative

        # Identical content already in place (content-hashed or unchanged)
        if not (destination.exists() and destination.read_bytes() == content):
            atomic_write_bytes(destination, content)

        return StoredFile(path=relative.as_posix(), sha256=sha256, size_bytes=len(content))

    def store_file(self, source: Path, subdir: Optional[str] = None, hashed: bool = False) -> StoredFile:
        """Copy an emitted file into the dist root."""
        source = Path(source)
        return self.store(source.read_bytes(), source.name, subdir=subdir, hashed=hashed)

    def retrieve(self, relative_path: str) -> Optional[bytes]:
        """Read a stored file, or None if absent."""
        path = self.dist_dir / relative_path
        if path.exists():
            return path.read_bytes()
        return None
