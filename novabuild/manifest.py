"""
Output manifest published to the runtime loader and the dev server.

The manifest maps logical bundle names to emitted files and content hashes.
It is rebuilt wholesale and published by swapping the whole mapping in one
step; readers never observe a mix of two passes.
"""
import json
import logging
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from novabuild.artifacts.store import atomic_write_bytes
from novabuild.errors import ManifestNotFound


logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class ManifestFile(BaseModel):
    """One emitted file of a bundle."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str
    content_hash: str = Field(alias="contentHash")


class ManifestEntry(BaseModel):
    """Emitted files of one logical bundle, in load order."""
    model_config = ConfigDict(frozen=True)

    bundle_name: str
    output_files: List[ManifestFile]

    def to_json_list(self) -> List[Dict[str, str]]:
        return [f.model_dump(by_alias=True) for f in self.output_files]


Listener = Callable[['OutputManifest'], None]
EntriesLike = Union[Iterable[ManifestEntry], Mapping[str, ManifestEntry]]


class OutputManifest:
    """
    Atomically published bundle manifest.

    publish() swaps the mapping reference under a lock and persists the new
    mapping with a temp-file replace. Readers take the current reference
    without locking.
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize manifest.

        Args:
            path: Where each published manifest is persisted (None: memory only)
        """
        self.path = Path(path) if path else None
        self._entries: Mapping[str, ManifestEntry] = MappingProxyType({})
        self._version = 0
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    @property
    def version(self) -> int:
        """Number of publishes so far."""
        return self._version

    def subscribe(self, listener: Listener):
        """Register a callback invoked after every publish."""
        self._listeners.append(listener)

    def publish(self, entries: EntriesLike) -> int:
        """
        Replace the whole manifest.

        Args:
            entries: ManifestEntry iterable or mapping of bundle name to entry

        Returns:
            New manifest version

        Raises:
            ValueError: If two entries share a bundle name
        """
        if isinstance(entries, Mapping):
            entries = entries.values()

        mapping: Dict[str, ManifestEntry] = {}
        for entry in entries:
            if entry.bundle_name in mapping:
                raise ValueError(f"Duplicate bundle name in manifest: {entry.bundle_name}")
            mapping[entry.bundle_name] = entry

        frozen = MappingProxyType(dict(sorted(mapping.items())))

        with self._lock:
            if self.path is not None:
                atomic_write_bytes(self.path, serialize(frozen))
            self._entries = frozen
            self._version += 1
            version = self._version

        logger.info(f"Published manifest v{version} ({len(frozen)} bundle(s))")

        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning(f"Manifest listener failed: {e}")

        return version

    def lookup(self, bundle_name: str) -> ManifestEntry:
        """
        Get the published entry for a bundle.

        Raises:
            ManifestNotFound: If the bundle is not in the current manifest
        """
        entries = self._entries
        if bundle_name not in entries:
            raise ManifestNotFound(bundle_name)
        return entries[bundle_name]

    def snapshot(self) -> Mapping[str, ManifestEntry]:
        """Current immutable mapping."""
        return self._entries

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {name: entry.to_json_list() for name, entry in self._entries.items()}

    def to_json(self) -> str:
        return serialize(self._entries).decode('utf-8')

    @classmethod
    def load(cls, path: Path) -> 'OutputManifest':
        """
        Load a persisted manifest.

        Raises:
            FileNotFoundError: If the manifest file does not exist
            ValueError: If the file does not match the manifest schema
        """
        path = Path(path)
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"Invalid manifest in {path}: must be a JSON object")

        manifest = cls(path=None)
        manifest._entries = MappingProxyType({
            name: ManifestEntry(
                bundle_name=name,
                output_files=[ManifestFile.model_validate(item) for item in files]
            )
            for name, files in sorted(data.items())
        })
        manifest.path = path
        return manifest


def serialize(entries: Mapping[str, ManifestEntry]) -> bytes:
    """Deterministic JSON encoding of the persisted manifest schema."""
    data = {name: entry.to_json_list() for name, entry in entries.items()}
    return (json.dumps(data, indent=2, sort_keys=True) + "\n").encode('utf-8')
