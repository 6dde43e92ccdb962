"""
Target descriptor registry.

Static, ordered list of compilation targets loaded once at startup and passed
by reference to every component. Never mutated after load.
"""
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from novabuild.errors import ConfigError


class OutputFormat(str, Enum):
    """Loading contract of a compiled target."""
    MODULE_LOADABLE = "module"   # imported via dynamic import()
    GLOBAL_INJECTABLE = "global"  # side-effect loaded via <script>, binds a global symbol

    @classmethod
    def parse(cls, value: str) -> 'OutputFormat':
        aliases = {
            "module": cls.MODULE_LOADABLE,
            "moduleloadable": cls.MODULE_LOADABLE,
            "web": cls.MODULE_LOADABLE,
            "global": cls.GLOBAL_INJECTABLE,
            "globalinjectable": cls.GLOBAL_INJECTABLE,
            "no-modules": cls.GLOBAL_INJECTABLE,
        }
        key = str(value).replace("_", "").lower()
        if key not in aliases:
            raise ConfigError(f"Unknown output format: {value!r} (expected 'module' or 'global')")
        return aliases[key]


@dataclass(frozen=True)
class TargetDescriptor:
    """One independently compiled native-to-WebAssembly unit."""
    id: str
    source_dir: Path
    output_format: OutputFormat
    extra_flags: Tuple[str, ...] = ()
    watch_paths: FrozenSet[Path] = frozenset()
    global_name: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.output_format is OutputFormat.GLOBAL_INJECTABLE

    @property
    def global_symbol(self) -> str:
        """Global runtime symbol a GlobalInjectable target binds to."""
        return self.global_name or re.sub(r'\W', '_', self.id)

    def watches(self, path: Path) -> bool:
        """True if path lies under one of this target's watch paths."""
        path = Path(path)
        return any(path == root or root in path.parents for root in self.watch_paths)


class TargetRegistry:
    """Immutable ordered registry of TargetDescriptors."""

    REQUIRED_FIELDS = ('id', 'source_dir', 'format')

    def __init__(self, descriptors: Sequence[TargetDescriptor]):
        self._descriptors: Tuple[TargetDescriptor, ...] = tuple(descriptors)
        self._by_id: Dict[str, TargetDescriptor] = {}
        seen_dirs: Dict[Path, str] = {}

        for descriptor in self._descriptors:
            if descriptor.id in self._by_id:
                raise ConfigError(f"Duplicate target id: {descriptor.id}")
            if descriptor.source_dir in seen_dirs:
                raise ConfigError(
                    f"Targets '{seen_dirs[descriptor.source_dir]}' and '{descriptor.id}' "
                    f"share source directory {descriptor.source_dir}"
                )
            if not descriptor.source_dir.is_dir():
                raise ConfigError(f"Source directory for target '{descriptor.id}' does not exist: {descriptor.source_dir}")

            self._by_id[descriptor.id] = descriptor
            seen_dirs[descriptor.source_dir] = descriptor.id

    @classmethod
    def from_config(cls, targets: List[Dict[str, Any]], project_root: Path) -> 'TargetRegistry':
        """
        Build registry from raw target entries.

        Args:
            targets: Target dicts from the project config
            project_root: Root that relative paths resolve against

        Returns:
            TargetRegistry instance

        Raises:
            ConfigError: On missing fields, unknown formats, duplicate ids or
                source directories, or a source directory that does not exist
        """
        descriptors = []

        for index, entry in enumerate(targets):
            if not isinstance(entry, dict):
                raise ConfigError(f"Target #{index} must be a YAML dict")

            missing_fields = [name for name in cls.REQUIRED_FIELDS if name not in entry]
            if missing_fields:
                raise ConfigError(f"Target #{index} missing required fields: {', '.join(missing_fields)}")

            source_dir = (project_root / entry['source_dir']).resolve()

            # A target always watches its own crate
            watch_paths = {source_dir}
            for watch_path in entry.get('watch_paths', []):
                watch_paths.add((project_root / watch_path).resolve())

            extra_flags = entry.get('extra_flags', [])
            if isinstance(extra_flags, str):
                extra_flags = extra_flags.split()

            descriptors.append(TargetDescriptor(
                id=str(entry['id']),
                source_dir=source_dir,
                output_format=OutputFormat.parse(entry['format']),
                extra_flags=tuple(str(flag) for flag in extra_flags),
                watch_paths=frozenset(watch_paths),
                global_name=entry.get('global_name'),
            ))

        return cls(descriptors)

    def __iter__(self) -> Iterator[TargetDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, target_id: str) -> bool:
        return target_id in self._by_id

    def get(self, target_id: str) -> TargetDescriptor:
        if target_id not in self._by_id:
            raise ConfigError(f"Unknown target: {target_id}")
        return self._by_id[target_id]

    def ids(self) -> List[str]:
        return [d.id for d in self._descriptors]

    def affected_by(self, path: Path) -> List[TargetDescriptor]:
        """Targets whose watch paths contain an ancestor of path, in registry order."""
        return [d for d in self._descriptors if d.watches(path)]
