"""
Pytest configuration for unit tests.

Provides a sample two-target project (module-loadable app + global-injectable
worker) and fake collaborators standing in for wasm-pack and webpack.
"""
import threading
import time
from pathlib import Path

import pytest

from novabuild.artifacts.store import OutputStore
from novabuild.assets import AssetPipeline
from novabuild.bundler import PassResult, UiBundler
from novabuild.compilers.base import CompilationResult, TargetCompiler
from novabuild.graph import BuildGraph
from novabuild.manifest import MANIFEST_NAME, OutputManifest
from novabuild.registry import TargetRegistry


NOVABUILD_ENV = (
    "NOVABUILD_MODE", "NOVABUILD_DIST_DIR", "NOVABUILD_BUILD_DIR", "NOVABUILD_JOBS",
    "NOVABUILD_DEV_HOST", "NOVABUILD_DEV_PORT", "NOVABUILD_DEBOUNCE_MS", "NOVABUILD_WATCH_POLLING",
)


class FakeCompiler(TargetCompiler):
    """
    Compiler that derives its output from the target's source files.

    Output bytes only change when sources (or the mode) change, so content
    hashes behave like a real deterministic build.
    """

    def __init__(self, build_dir: Path, failing=(), delay: float = 0.0):
        self.build_dir = Path(build_dir)
        self.failing = set(failing)
        self.delay = delay
        self.calls = []
        self.max_concurrency = 0
        self._active = 0
        self._lock = threading.Lock()

    def compile(self, descriptor, settings):
        with self._lock:
            self.calls.append(descriptor.id)
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)

        try:
            if self.delay:
                time.sleep(self.delay)

            package_dir = self.build_dir / "targets" / descriptor.id / "pkg"
            package_dir.mkdir(parents=True, exist_ok=True)

            if descriptor.id in self.failing:
                return CompilationResult(
                    target_id=descriptor.id,
                    success=False,
                    output_format=descriptor.output_format,
                    diagnostics=(f"error[E0425]: cannot find value `x` in crate `{descriptor.id}`",),
                    package_dir=package_dir
                )

            source = b"".join(
                path.read_bytes()
                for path in sorted(descriptor.source_dir.rglob("*"))
                if path.is_file()
            )

            shim = package_dir / f"{descriptor.id}.js"
            shim.write_text(f"// {descriptor.output_format.value} shim for {descriptor.id}\n")
            wasm = package_dir / f"{descriptor.id}_bg.wasm"
            wasm.write_bytes(b"\x00asm\x01\x00\x00\x00" + settings.mode.value.encode() + source)

            return CompilationResult(
                target_id=descriptor.id,
                success=True,
                output_format=descriptor.output_format,
                emitted_files=frozenset([shim, wasm]),
                package_dir=package_dir
            )
        finally:
            with self._lock:
                self._active -= 1


class FakeBundler(UiBundler):
    """UI bundler that emits main.js and main.css from the www directory."""

    def __init__(self, source_dir: Path, output_dir: Path, fail: bool = False):
        self.source_dir = Path(source_dir)
        self.output_dir = Path(output_dir)
        self.fail = fail
        self.calls = 0

    def watch_roots(self):
        return [self.source_dir]

    def bundle(self, settings):
        self.calls += 1
        if self.fail:
            return PassResult(name=self.name, success=False, diagnostics=("Module not found: './App'",))

        self.output_dir.mkdir(parents=True, exist_ok=True)
        entry = (self.source_dir / "bootstrap.js").read_text()
        js = self.output_dir / "main.js"
        js.write_text(f"/* {settings.mode.value} */\n{entry}")
        css = self.output_dir / "main.css"
        css.write_text("body { margin: 0; }\n")

        return PassResult(name=self.name, success=True, emitted_files=frozenset([js, css]), root=self.output_dir)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep NOVABUILD_* variables from the outer environment out of tests."""
    for name in NOVABUILD_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project(tmp_path):
    """Sample project tree with an app crate, a worker crate and UI sources."""
    root = tmp_path / "project"

    for crate in ("app", "worker"):
        src = root / "bin" / crate / "src"
        src.mkdir(parents=True)
        (src / "lib.rs").write_text(f"// {crate}\npub fn main() {{}}\n")
        (root / "bin" / crate / "Cargo.toml").write_text(f"[package]\nname = \"{crate}\"\n")

    shared = root / "src"
    shared.mkdir()
    (shared / "lib.rs").write_text("pub mod geometry;\n")

    www = root / "www"
    (www / "fonts").mkdir(parents=True)
    (www / "bootstrap.js").write_text("import('./app').then((app) => app.run_app());\n")
    (www / "index.html").write_text("<!doctype html><script type=\"module\" src=\"novabuild-loader.js\"></script>\n")
    (www / "fonts" / "icons.woff2").write_bytes(b"wOF2fake")

    return root


@pytest.fixture
def registry(project):
    """Registry with the app (module) and worker (global) targets."""
    return TargetRegistry.from_config([
        {'id': 'app', 'source_dir': 'bin/app', 'format': 'module', 'watch_paths': ['src']},
        {'id': 'worker', 'source_dir': 'bin/worker', 'format': 'global', 'global_name': 'native_worker'},
    ], project)


@pytest.fixture
def fake_compiler_cls():
    return FakeCompiler


@pytest.fixture
def make_graph(project, registry):
    """Factory building a BuildGraph over the sample project."""

    def factory(failing=(), delay=0.0, jobs=4, ui=False, ui_fail=False, assets=False):
        build_dir = project / ".novabuild"
        dist_dir = project / "dist"
        compiler = FakeCompiler(build_dir, failing=failing, delay=delay)
        bundler = FakeBundler(project / "www", build_dir / "ui", fail=ui_fail) if ui else None
        pipeline = AssetPipeline({
            'fonts': project / "www" / "fonts",
            'html': project / "www" / "index.html",
        }) if assets else None

        return BuildGraph(
            registry=registry,
            compiler=compiler,
            store=OutputStore(dist_dir),
            manifest=OutputManifest(dist_dir / MANIFEST_NAME),
            bundler=bundler,
            assets=pipeline,
            jobs=jobs,
            app_target='app',
            run_export='run_app'
        )

    return factory
