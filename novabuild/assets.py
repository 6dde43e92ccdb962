"""
Static asset pass-through (styles, fonts, HTML).

Transcoding and templating happen upstream; this pass only reports which
files of each configured group should be published.
"""
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from novabuild.bundler import PassResult
from novabuild.modes import ModeSettings


# Entry documents and source maps are referenced by fixed name
STABLE_NAME_SUFFIXES = (".html", ".htm", ".map")


class AssetPipeline:
    """Publishes configured asset groups verbatim."""

    def __init__(self, groups: Dict[str, Path]):
        self.groups = {name: Path(path) for name, path in groups.items()}

    def names(self) -> List[str]:
        return list(self.groups)

    def affected_by(self, path: Path) -> List[str]:
        path = Path(path)
        return [
            name for name, root in self.groups.items()
            if path == root or root in path.parents
        ]

    def process(self, group: str, settings: ModeSettings) -> PassResult:
        started_at = datetime.utcnow()
        source = self.groups[group]

        if not source.exists():
            return PassResult(
                name=group,
                success=False,
                diagnostics=(f"Asset path for group '{group}' does not exist: {source}",),
                started_at=started_at,
                completed_at=datetime.utcnow()
            )

        if source.is_file():
            root = source.parent
            files = frozenset([source])
        else:
            root = source
            files = frozenset(
                p for p in source.rglob("*")
                if p.is_file() and not p.name.startswith(".")
            )

        return PassResult(
            name=group,
            success=True,
            emitted_files=files,
            root=root,
            started_at=started_at,
            completed_at=datetime.utcnow()
        )


def keeps_stable_name(path: Path) -> bool:
    return Path(path).suffix.lower() in STABLE_NAME_SUFFIXES
