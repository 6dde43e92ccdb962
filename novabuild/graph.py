"""
Build graph - coordinates target compilation, the UI pass and asset passes.

Targets have no inter-target dependencies, so every unit of a pass is
submitted to a worker pool at once and joined before the manifest is linked.

Policies:
- Full build (all targets): fail-together. Any failure raises BuildError and
  nothing is published.
- Partial rebuild (explicit subset): fail-isolated. Successful units replace
  their manifest entries; failed units keep their previous entries.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from novabuild.artifacts.store import OutputStore
from novabuild.assets import AssetPipeline, keeps_stable_name
from novabuild.bundler import PassResult, UiBundler, group_by_stem
from novabuild.compilers.base import CompilationResult, TargetCompiler
from novabuild.errors import BuildError, CompileError
from novabuild.loader import LOADER_NAME, render_loader
from novabuild.manifest import ManifestEntry, ManifestFile, OutputManifest
from novabuild.modes import ModeSettings
from novabuild.registry import TargetDescriptor, TargetRegistry


logger = logging.getLogger(__name__)

LOADER_BUNDLE = "loader"


@dataclass
class BuildReport:
    """Outcome of one build pass."""
    settings: ModeSettings
    full: bool
    results: Dict[str, CompilationResult] = field(default_factory=dict)
    passes: Dict[str, PassResult] = field(default_factory=dict)
    failures: List[CompileError] = field(default_factory=list)
    manifest_version: Optional[int] = None

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def published(self) -> bool:
        return self.manifest_version is not None

    @property
    def diagnostics(self) -> List[str]:
        return [
            f"[{failure.target_id}] {message}"
            for failure in self.failures
            for message in failure.diagnostics
        ]


class BuildGraph:
    """
    Orders and joins the units of a build pass.

    Keeps the latest CompilationResult per target and the last published
    entry per bundle, so partial rebuilds reuse everything they do not touch.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        compiler: TargetCompiler,
        store: OutputStore,
        manifest: OutputManifest,
        bundler: Optional[UiBundler] = None,
        assets: Optional[AssetPipeline] = None,
        jobs: int = 4,
        app_target: Optional[str] = None,
        run_export: str = "run_app"
    ):
        """
        Initialize build graph.

        Args:
            registry: Immutable target registry
            compiler: Compiler used for every target
            store: Output store for the dist root
            manifest: Manifest published at the end of each pass
            bundler: UI bundling collaborator (None: no UI pass)
            assets: Asset pipeline (None: no asset groups)
            jobs: Worker pool size
            app_target: ModuleLoadable target the loader imports and runs
            run_export: Export invoked on the application target
        """
        self.registry = registry
        self.compiler = compiler
        self.store = store
        self.manifest = manifest
        self.bundler = bundler
        self.assets = assets
        self.jobs = max(1, jobs)
        self.app_target = app_target
        self.run_export = run_export

        self._latest_results: Dict[str, CompilationResult] = {}
        self._entries: Dict[str, ManifestEntry] = {}
        self._ui_bundles: Set[str] = set()
        self._run_lock = threading.Lock()

    def latest_result(self, target_id: str) -> Optional[CompilationResult]:
        """Latest CompilationResult for a target, or None if never compiled."""
        return self._latest_results.get(target_id)

    def run(
        self,
        settings: ModeSettings,
        targets: Optional[Iterable[str]] = None,
        ui: Optional[bool] = None,
        asset_groups: Optional[Iterable[str]] = None
    ) -> BuildReport:
        """
        Run one build pass.

        Args:
            settings: Active mode settings
            targets: Target ids to rebuild (None: full build of every target)
            ui: Run the UI pass (default: True for full builds, False otherwise)
            asset_groups: Asset groups to process (default: all for full builds, none otherwise)

        Returns:
            BuildReport for the pass

        Raises:
            BuildError: If any unit fails during a full build
            ToolchainUnavailableError: If the compiler or bundler cannot be run
        """
        full = targets is None

        if full:
            selected = list(self.registry)
        else:
            wanted = set(targets)
            selected = [d for d in self.registry if d.id in wanted]
            unknown = wanted - set(self.registry.ids())
            if unknown:
                logger.warning(f"Ignoring unknown targets: {', '.join(sorted(unknown))}")

        if ui is None:
            ui = full
        ui = ui and self.bundler is not None

        if asset_groups is None:
            asset_groups = self.assets.names() if (full and self.assets) else []
        asset_groups = list(asset_groups) if self.assets else []

        with self._run_lock:
            return self._run(settings, full, selected, ui, asset_groups)

    def _run(
        self,
        settings: ModeSettings,
        full: bool,
        selected: List[TargetDescriptor],
        ui: bool,
        asset_groups: List[str]
    ) -> BuildReport:
        report = BuildReport(settings=settings, full=full)

        if selected:
            self.compiler.ensure_available()
        if ui:
            self.bundler.ensure_available()

        logger.info(
            f"Starting {'full' if full else 'partial'} {settings.mode.value} build: "
            f"targets={[d.id for d in selected]} ui={ui} assets={asset_groups}"
        )

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="novabuild") as pool:
            futures = {}
            for descriptor in selected:
                futures[pool.submit(self._compile, descriptor, settings)] = ('target', descriptor.id)
            if ui:
                futures[pool.submit(self._pass, self.bundler.name, self.bundler.bundle, settings)] = ('ui', self.bundler.name)
            for group in asset_groups:
                futures[pool.submit(self._pass, group, self.assets.process, group, settings)] = ('asset', group)

            for future in as_completed(futures):
                kind, name = futures[future]
                result = future.result()

                if kind == 'target':
                    self._latest_results[name] = result
                    report.results[name] = result
                else:
                    report.passes[name] = result

                if not result.success:
                    report.failures.append(result.to_error())

        # Registry order, independent of completion order
        report.failures.sort(key=lambda failure: (self._unit_order(failure.target_id), failure.target_id))

        if report.failures:
            for line in report.diagnostics:
                logger.warning(line)

            if full:
                raise BuildError(report.failures, list(report.results.values()) + list(report.passes.values()))

        succeeded = any(r.success for r in report.results.values()) or any(p.success for p in report.passes.values())
        if not full and not succeeded:
            logger.warning("Partial rebuild produced no successful unit; manifest left unchanged")
            return report

        report.manifest_version = self._link(settings, full, report)
        return report

    def _compile(self, descriptor: TargetDescriptor, settings: ModeSettings) -> CompilationResult:
        """Compile one target, turning unexpected errors into a failed result."""
        started_at = datetime.utcnow()
        try:
            return self.compiler.compile(descriptor, settings)
        except Exception as e:
            logger.exception(f"Compiler crashed for target {descriptor.id}")
            return CompilationResult(
                target_id=descriptor.id,
                success=False,
                output_format=descriptor.output_format,
                diagnostics=(f"Compiler error: {e}",),
                started_at=started_at,
                completed_at=datetime.utcnow()
            )

    def _pass(self, name: str, fn, *args) -> PassResult:
        """Run a UI or asset pass, turning unexpected errors into a failed result."""
        started_at = datetime.utcnow()
        try:
            return fn(*args)
        except Exception as e:
            logger.exception(f"Pass {name} crashed")
            return PassResult(
                name=name,
                success=False,
                diagnostics=(f"Pass error: {e}",),
                started_at=started_at,
                completed_at=datetime.utcnow()
            )

    def _unit_order(self, name: str) -> int:
        ids = self.registry.ids()
        return ids.index(name) if name in ids else len(ids)

    def _link(self, settings: ModeSettings, full: bool, report: BuildReport) -> int:
        """Place outputs in the dist root and publish the manifest."""
        entries: Dict[str, ManifestEntry] = {} if full else dict(self._entries)
        hashed = settings.filename_hashing

        for target_id, result in report.results.items():
            if result.success:
                entries[target_id] = self._store_target(result, hashed)

        ui_result = None
        for name, result in report.passes.items():
            if not result.success:
                continue
            if self.bundler is not None and name == self.bundler.name:
                ui_result = result
            else:
                entries[name] = self._store_asset_group(result, hashed)

        if ui_result is not None:
            for bundle in self._ui_bundles:
                entries.pop(bundle, None)
            ui_entries = self._store_ui(ui_result, reserved=set(entries) | {LOADER_BUNDLE})
            entries.update(ui_entries)
            self._ui_bundles = set(ui_entries)

        loader = render_loader(
            self.registry,
            entries,
            app_target=self.app_target,
            run_export=self.run_export,
            live_reload=settings.live_reload
        )
        stored = self.store.store(loader.encode('utf-8'), LOADER_NAME, hashed=False)
        entries[LOADER_BUNDLE] = ManifestEntry(
            bundle_name=LOADER_BUNDLE,
            output_files=[ManifestFile(path=stored.path, content_hash=stored.sha256)]
        )

        version = self.manifest.publish(entries)
        self._entries = entries
        return version

    def _store_target(self, result: CompilationResult, hashed: bool) -> ManifestEntry:
        """
        Publish a compiled package under <dist>/<target_id>/.

        Top-level files (shim, module) come first and may be hashed; the
        loader passes the module URL explicitly. Nested files such as
        snippets/ are imported by relative path from the shim and keep
        their names.
        """
        root = result.package_dir

        def nested(path: Path) -> bool:
            return root is not None and path.parent != root

        def order(path: Path):
            return (nested(path), path.relative_to(root).as_posix() if nested(path) else path.name)

        files = []
        for path in sorted(result.emitted_files, key=order):
            if nested(path):
                stored = self._store_relative(path, root, hashed=False, prefix=result.target_id)
            else:
                stored = self.store.store_file(path, subdir=result.target_id, hashed=hashed)
            files.append(ManifestFile(path=stored.path, content_hash=stored.sha256))
        return ManifestEntry(bundle_name=result.target_id, output_files=files)

    def _store_ui(self, result: PassResult, reserved: Set[str]) -> Dict[str, ManifestEntry]:
        """
        Publish the UI bundle under the names the bundler emitted.

        The bundler hashes file names itself in production; renaming here
        would break the references between its outputs.
        """
        entries = {}
        for stem, paths in group_by_stem(result.emitted_files, result.root).items():
            bundle = stem if stem not in reserved else f"ui-{stem}"
            files = []
            for path in paths:
                stored = self._store_relative(path, result.root, hashed=False)
                files.append(ManifestFile(path=stored.path, content_hash=stored.sha256))
            entries[bundle] = ManifestEntry(bundle_name=bundle, output_files=files)
        return entries

    def _store_asset_group(self, result: PassResult, hashed: bool) -> ManifestEntry:
        files = []
        for path in sorted(result.emitted_files, key=lambda p: p.relative_to(result.root).as_posix()):
            if keeps_stable_name(path):
                stored = self._store_relative(path, result.root, hashed=False)
            else:
                stored = self._store_relative(path, result.root, hashed, prefix=result.name)
            files.append(ManifestFile(path=stored.path, content_hash=stored.sha256))
        return ManifestEntry(bundle_name=result.name, output_files=files)

    def _store_relative(self, path: Path, root: Path, hashed: bool, prefix: Optional[str] = None):
        relative_parent = path.parent.relative_to(root).as_posix()
        parts = [p for p in (prefix, relative_parent) if p and p != "."]
        subdir = "/".join(parts) or None
        return self.store.store_file(path, subdir=subdir, hashed=hashed and not keeps_stable_name(path))
