"""
Runtime loader generator.

Renders novabuild-loader.js, the ES module the browser loads from the dist
root. It exposes loadModule(bundleName) and bootstraps the application:
GlobalInjectable targets are side-effect loaded through a plain <script> tag
and initialised via their global symbol; the ModuleLoadable application
target is loaded with dynamic import() and its run export is invoked.
"""
import json
from typing import Dict, Mapping, Optional

from novabuild.manifest import ManifestEntry
from novabuild.registry import TargetRegistry


LOADER_NAME = "novabuild-loader.js"
LIVERELOAD_PATH = "/livereload"

_TEMPLATE = """\
// Generated by novabuild. Do not edit.
const TARGETS = __TARGETS__;
const BOOT = __BOOT__;

const loaded = new Map();
const url = (path) => new URL(path, import.meta.url).href;

export class LoadError extends Error {
  constructor(bundleName, cause) {
    super(`Failed to load bundle '${bundleName}': ${cause && cause.message ? cause.message : cause}`);
    this.name = "LoadError";
    this.bundleName = bundleName;
    this.cause = cause;
  }
}

function injectScript(src) {
  return new Promise((resolve, reject) => {
    const script = document.createElement("script");
    script.src = src;
    script.onload = () => resolve();
    script.onerror = () => reject(new Error(`script ${src} failed to load`));
    document.head.appendChild(script);
  });
}

function loadGlobal(spec) {
  return injectScript(url(spec.script)).then(() => {
    const init = globalThis[spec.global];
    if (typeof init !== "function") {
      throw new Error(`global '${spec.global}' was not defined by ${spec.script}`);
    }
    return init(url(spec.wasm)).then(() => init);
  });
}

function loadImported(spec) {
  return import(url(spec.script)).then((module) =>
    Promise.resolve(module.default(url(spec.wasm))).then(() => module)
  );
}

export function loadModule(bundleName) {
  if (loaded.has(bundleName)) {
    return loaded.get(bundleName);
  }
  const spec = TARGETS[bundleName];
  if (!spec) {
    return Promise.reject(new LoadError(bundleName, new Error("not in manifest")));
  }
  const pending = (spec.format === "global" ? loadGlobal(spec) : loadImported(spec))
    .then((exports) => ({ bundleName, format: spec.format, exports }))
    .catch((error) => {
      loaded.delete(bundleName);
      throw new LoadError(bundleName, error);
    });
  loaded.set(bundleName, pending);
  return pending;
}

Promise.all(BOOT.globals.map(loadModule))
  .then(() => (BOOT.app ? loadModule(BOOT.app) : null))
  .then((handle) => {
    if (handle) {
      handle.exports[BOOT.run]();
    }
  })
  .catch((error) => console.error("Error bootstrapping application:", error));
"""

_LIVERELOAD = """
(() => {
  const scheme = location.protocol === "https:" ? "wss:" : "ws:";
  const socket = new WebSocket(`${scheme}//${location.host}__PATH__`);
  socket.onmessage = (event) => {
    const message = JSON.parse(event.data);
    if (message.type === "reload") {
      location.reload();
    }
  };
  socket.onclose = () => console.warn("novabuild live reload disconnected");
})();
"""


def target_specs(registry: TargetRegistry, entries: Mapping[str, ManifestEntry]) -> Dict[str, Dict[str, str]]:
    """Loader table for every target present in the manifest."""
    specs = {}
    for descriptor in registry:
        entry = entries.get(descriptor.id)
        if entry is None:
            continue

        script = next((f.path for f in entry.output_files if f.path.endswith(".js")), None)
        wasm = next((f.path for f in entry.output_files if f.path.endswith(".wasm")), None)
        if script is None or wasm is None:
            continue

        spec = {
            'format': descriptor.output_format.value,
            'script': script,
            'wasm': wasm,
        }
        if descriptor.is_global:
            spec['global'] = descriptor.global_symbol
        specs[descriptor.id] = spec

    return specs


def render_loader(
    registry: TargetRegistry,
    entries: Mapping[str, ManifestEntry],
    app_target: Optional[str] = None,
    run_export: str = "run_app",
    live_reload: bool = False
) -> str:
    """
    Render the runtime loader module.

    Args:
        registry: Target registry (output formats, global symbols)
        entries: Manifest entries for the targets
        app_target: ModuleLoadable target to import and run at startup
        run_export: Export invoked on the application target
        live_reload: Append the dev server live-reload client

    Returns:
        JavaScript source of the loader
    """
    specs = target_specs(registry, entries)
    boot = {
        'globals': [name for name, spec in specs.items() if spec['format'] == 'global'],
        'app': app_target if app_target in specs else None,
        'run': run_export,
    }

    source = (
        _TEMPLATE
        .replace("__TARGETS__", json.dumps(specs, indent=2, sort_keys=True))
        .replace("__BOOT__", json.dumps(boot, sort_keys=True))
    )

    if live_reload:
        source += _LIVERELOAD.replace("__PATH__", LIVERELOAD_PATH)

    return source
