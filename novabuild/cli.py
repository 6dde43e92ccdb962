"""
novabuild command line interface.

Usage:
    novabuild build --mode=production
    novabuild build --mode=development          # full build, then watch + serve
    novabuild build --mode=development --no-watch
    novabuild manifest --bundle app
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from novabuild import __version__
from novabuild.artifacts.store import OutputStore
from novabuild.assets import AssetPipeline
from novabuild.bundler import WebpackBundler
from novabuild.compilers.wasm_pack import WasmPackCompiler
from novabuild.config import BuildConfig, find_config
from novabuild.errors import BuildError, ConfigError, ManifestNotFound, ToolchainUnavailableError, WatchIOError
from novabuild.graph import LOADER_BUNDLE, BuildGraph, BuildReport
from novabuild.manifest import MANIFEST_NAME, OutputManifest
from novabuild.modes import ModeSettings, resolve
from novabuild.registry import OutputFormat, TargetRegistry


EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_CONFIG_ERROR = 2


def create_graph(config: BuildConfig, registry: TargetRegistry) -> BuildGraph:
    """Wire the build graph from project configuration."""
    ui = config.ui

    if ui is not None and ui.app_target is not None:
        if ui.app_target not in registry:
            raise ConfigError(f"ui.app_target '{ui.app_target}' is not a registered target")
        if registry.get(ui.app_target).output_format is not OutputFormat.MODULE_LOADABLE:
            raise ConfigError(f"ui.app_target '{ui.app_target}' must use the 'module' output format")

    # Asset groups share the manifest namespace with targets
    for name in config.assets:
        if name in registry or name == LOADER_BUNDLE:
            raise ConfigError(f"Asset group '{name}' clashes with a target id or the reserved '{LOADER_BUNDLE}' bundle")

    return BuildGraph(
        registry=registry,
        compiler=WasmPackCompiler(config.build_dir, timeout_seconds=config.compile_timeout_seconds),
        store=OutputStore(config.dist_dir),
        manifest=OutputManifest(config.dist_dir / MANIFEST_NAME),
        bundler=WebpackBundler(ui, config.build_dir, config.project_root) if ui else None,
        assets=AssetPipeline(config.assets) if config.assets else None,
        jobs=config.jobs,
        app_target=ui.app_target if ui else None,
        run_export=ui.run_export if ui else "run_app",
    )


def print_report(report: BuildReport):
    """Print per-unit status lines for a build pass."""
    for target_id, result in sorted(report.results.items()):
        marker = "✅" if result.success else "❌"
        print(f"  {marker} {target_id} ({result.output_format.value})")
    for name, result in sorted(report.passes.items()):
        marker = "✅" if result.success else "❌"
        print(f"  {marker} {name}")
    for line in report.diagnostics:
        print(f"     {line}", file=sys.stderr)
    if report.published:
        print(f"📦 Manifest v{report.manifest_version} published")


def cmd_build(args) -> int:
    settings = resolve({'mode': args.mode, 'watch': False if args.no_watch else None})

    config_path = Path(args.config) if args.config else find_config()
    config = BuildConfig.from_yaml(config_path)
    registry = TargetRegistry.from_config(config.targets, config.project_root)
    graph = create_graph(config, registry)

    print(f"novabuild {__version__}")
    print(f"Mode: {settings.mode.value}")
    print(f"Targets: {', '.join(registry.ids())}")
    print(f"Output: {config.dist_dir}")
    print()

    try:
        report = graph.run(settings)
        print_report(report)
        print("\n✅ Build completed")
    except BuildError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        for line in e.diagnostics:
            print(f"     {line}", file=sys.stderr)
        if not settings.watch_enabled:
            return EXIT_BUILD_FAILED
        print("⚠️  Continuing to watch; fix the errors above to trigger a rebuild")

    if not settings.watch_enabled:
        return EXIT_OK

    return watch(graph, config, settings, serve=not args.no_serve)


def watch(graph: BuildGraph, config: BuildConfig, settings: ModeSettings, serve: bool = True) -> int:
    """Watch sources and rebuild until interrupted."""
    from novabuild.watch import FilesystemWatcher, WatchScheduler, watch_paths_for

    def on_cycle(report: BuildReport):
        print(f"\n🔁 Rebuilt ({'ok' if report.success else 'with errors'})")
        print_report(report)

    scheduler = WatchScheduler(
        graph,
        settings,
        debounce_seconds=config.debounce_ms / 1000.0,
        queue_size=config.watch_queue_size,
        ignored_roots=config.ignored_roots(),
        on_cycle=on_cycle,
    )
    watcher = FilesystemWatcher(scheduler, watch_paths_for(graph), polling=config.watch_polling)

    server = None
    if serve:
        from novabuild.devserver import DevServer, create_app
        server = DevServer(create_app(graph.manifest, config.dist_dir), config.dev_host, config.dev_port)
        server.start()
        print(f"🌐 Serving {config.dist_dir} on http://{config.dev_host}:{config.dev_port}")

    try:
        watcher.start()
        print(f"\n👀 Watching for changes ({settings.mode.value} mode)...")
        print("   Press Ctrl+C to stop\n")
        scheduler.run(watcher)
    except KeyboardInterrupt:
        print("\n🛑 Stopping file watcher...")
        scheduler.stop()
    finally:
        watcher.stop()
        if server is not None:
            server.stop()

    return EXIT_OK


def cmd_manifest(args) -> int:
    config_path = Path(args.config) if args.config else find_config()
    config = BuildConfig.from_yaml(config_path)
    manifest_path = config.dist_dir / MANIFEST_NAME

    if not manifest_path.exists():
        print(f"❌ No manifest at {manifest_path}; run `novabuild build` first", file=sys.stderr)
        return EXIT_BUILD_FAILED

    manifest = OutputManifest.load(manifest_path)

    if args.bundle:
        try:
            entry = manifest.lookup(args.bundle)
        except ManifestNotFound as e:
            print(f"❌ {e}", file=sys.stderr)
            return EXIT_BUILD_FAILED
        for output_file in entry.output_files:
            print(f"{output_file.path}  {output_file.content_hash}")
        return EXIT_OK

    print(manifest.to_json(), end="")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="novabuild", description="Hybrid web + WebAssembly build orchestrator")
    parser.add_argument("--version", action="version", version=f"novabuild {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Build all targets (and watch in development mode)")
    build.add_argument(
        "--mode",
        choices=["development", "production"],
        default=None,
        help="Build mode (default: $NOVABUILD_MODE or development)"
    )
    build.add_argument("--config", help="Path to novabuild.yaml (default: search from cwd)")
    build.add_argument("--no-watch", action="store_true", help="Build once and exit, even in development mode")
    build.add_argument("--no-serve", action="store_true", help="Do not start the dev server while watching")
    build.set_defaults(func=cmd_build)

    manifest = subparsers.add_parser("manifest", help="Print the published manifest")
    manifest.add_argument("--config", help="Path to novabuild.yaml (default: search from cwd)")
    manifest.add_argument("--bundle", help="Print only this bundle's files")
    manifest.set_defaults(func=cmd_manifest)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        return args.func(args)
    except (ConfigError, ToolchainUnavailableError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except WatchIOError as e:
        print(f"❌ File watching failed: {e}", file=sys.stderr)
        return EXIT_BUILD_FAILED


if __name__ == "__main__":
    sys.exit(main())
