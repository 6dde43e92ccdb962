"""
UI bundling pass.

The bundler itself (module resolution, tree-shaking, code splitting) is an
external tool; this module only invokes it with mode-derived flags and
collects what it emitted.
"""
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from novabuild.config import UiConfig
from novabuild.errors import CompileError, ToolchainUnavailableError
from novabuild.modes import ModeSettings, SourceMapStyle


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassResult:
    """Outcome of a UI bundling or asset pass."""
    name: str
    success: bool
    emitted_files: FrozenSet[Path] = frozenset()
    diagnostics: Tuple[str, ...] = ()
    root: Optional[Path] = None
    started_at: Optional[datetime] = field(default=None, compare=False)
    completed_at: Optional[datetime] = field(default=None, compare=False)

    def to_error(self) -> CompileError:
        return CompileError(self.name, self.diagnostics)


def group_by_stem(files, root: Path) -> Dict[str, List[Path]]:
    """
    Group emitted files into bundles by the first component of their name.

    main.js, main.css and main.js.map all belong to bundle "main". Files in
    each group are sorted by their path relative to root.
    """
    groups: Dict[str, List[Path]] = {}
    for path in files:
        stem = Path(path).name.partition(".")[0]
        groups.setdefault(stem, []).append(Path(path))

    return {
        name: sorted(paths, key=lambda p: p.relative_to(root).as_posix())
        for name, paths in sorted(groups.items())
    }


class UiBundler(ABC):
    """Interface of the UI bundling collaborator."""

    name = "ui"

    def ensure_available(self):
        """Raise ToolchainUnavailableError if the bundler cannot be run."""

    @abstractmethod
    def watch_roots(self) -> List[Path]:
        """Directories whose changes affect the UI bundle."""
        pass

    def watches(self, path: Path) -> bool:
        """True if a change at path affects the UI bundle."""
        path = Path(path)
        return any(path == root or root in path.parents for root in self.watch_roots())

    @abstractmethod
    def bundle(self, settings: ModeSettings) -> PassResult:
        """Run the bundling pass. Failures are reported in the result, never raised."""
        pass


class WebpackBundler(UiBundler):
    """Runs the webpack CLI for the configured entry points."""

    def __init__(self, ui: UiConfig, build_dir: Path, project_root: Path):
        self.ui = ui
        self.output_dir = Path(build_dir) / "ui"
        self.project_root = Path(project_root)

    def ensure_available(self):
        if shutil.which(self.ui.command[0]) is None:
            raise ToolchainUnavailableError(f"UI bundler '{self.ui.command[0]}' not found on PATH")

    def watch_roots(self) -> List[Path]:
        roots = list(self.ui.watch_paths) or [entry.parent for entry in self.ui.entries]
        if self.ui.stylesheet is not None:
            roots.append(self.ui.stylesheet.parent)
        return roots

    def build_command(self, settings: ModeSettings) -> List[str]:
        devtool = "source-map" if settings.source_maps is SourceMapStyle.EXTERNAL else "inline-source-map"

        cmd = list(self.ui.command) + [
            "--mode", settings.mode.value,
            "--devtool", devtool,
            "--output-path", str(self.output_dir),
            "--no-watch",
            "--optimization-minimize" if settings.minify else "--no-optimization-minimize",
        ]

        # webpack hashes its own outputs so the references it emits (HTML
        # script tags, chunk loader) stay consistent with the file names
        if settings.filename_hashing:
            cmd += [
                "--output-filename", "[name].[contenthash].js",
                "--output-chunk-filename", "[id].[contenthash].js",
            ]

        for entry in self.ui.entries:
            cmd += ["--entry", str(entry)]
        if self.ui.stylesheet is not None:
            cmd += ["--entry", str(self.ui.stylesheet)]

        return cmd

    def bundle(self, settings: ModeSettings) -> PassResult:
        started_at = datetime.utcnow()

        if self.output_dir.exists():
            shutil.rmtree(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(settings)
        logger.info(f"Bundling UI: {' '.join(cmd)}")

        diagnostics: List[str] = []
        success = False

        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                timeout=self.ui.timeout_seconds
            )
            success = proc.returncode == 0
            if not success:
                output = (proc.stderr or "") + (proc.stdout or "")
                diagnostics = [line.rstrip() for line in output.splitlines() if line.strip()][-200:]
                diagnostics.append(f"UI bundler exited with code {proc.returncode}")
        except subprocess.TimeoutExpired:
            diagnostics.append(f"UI bundler timed out after {self.ui.timeout_seconds}s")
        except OSError as e:
            diagnostics.append(f"Failed to run UI bundler: {e}")

        emitted = frozenset(p for p in self.output_dir.rglob("*") if p.is_file()) if success else frozenset()

        return PassResult(
            name=self.name,
            success=success,
            emitted_files=emitted,
            diagnostics=tuple(diagnostics),
            root=self.output_dir,
            started_at=started_at,
            completed_at=datetime.utcnow()
        )
