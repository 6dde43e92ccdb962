"""
wasm-pack compiler - builds a Rust crate into a WebAssembly package.

ModuleLoadable targets use wasm-pack's `web` target (an ES module shim);
GlobalInjectable targets use `no-modules`, which binds the module to a global
symbol for plain <script> loading.
"""
import json
import logging
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from novabuild.compilers.base import CompilationResult, TargetCompiler
from novabuild.errors import ToolchainUnavailableError
from novabuild.modes import ModeSettings
from novabuild.registry import OutputFormat, TargetDescriptor


logger = logging.getLogger(__name__)

LOADABLE_SUFFIXES = (".js", ".wasm")
COMPILE_MANIFEST_NAME = "compile-manifest.json"
MAX_DIAGNOSTIC_LINES = 200


def loading_contract(descriptor: TargetDescriptor) -> str:
    """Loading contract recorded alongside the emitted package."""
    if descriptor.is_global:
        return f"global:{descriptor.global_symbol}"
    return "module"


class WasmPackCompiler(TargetCompiler):
    """Compiler that shells out to `wasm-pack build`."""

    def __init__(self, build_dir: Path, executable: str = "wasm-pack", timeout_seconds: int = 900):
        """
        Initialize wasm-pack compiler.

        Args:
            build_dir: Base directory for per-target packages
            executable: wasm-pack executable name or path
            timeout_seconds: Per-invocation timeout
        """
        self.build_dir = Path(build_dir)
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    def ensure_available(self):
        if shutil.which(self.executable) is None:
            raise ToolchainUnavailableError(
                f"'{self.executable}' not found on PATH. "
                f"Install with: cargo install wasm-pack"
            )

    def package_dir(self, descriptor: TargetDescriptor) -> Path:
        return self.build_dir / "targets" / descriptor.id / "pkg"

    def build_command(self, descriptor: TargetDescriptor, settings: ModeSettings) -> List[str]:
        """Command line for one target in the given mode."""
        cmd = [
            self.executable, "build", str(descriptor.source_dir),
            "--out-dir", str(self.package_dir(descriptor)),
            "--out-name", descriptor.id,
        ]

        if descriptor.output_format is OutputFormat.GLOBAL_INJECTABLE:
            cmd += ["--target", "no-modules", "--no-modules-global", descriptor.global_symbol]
        else:
            cmd += ["--target", "web"]

        # --dev keeps debug symbols, --release runs size optimisation and strips
        cmd.append("--release" if settings.is_production else "--dev")

        cmd.extend(descriptor.extra_flags)
        return cmd

    def compile(self, descriptor: TargetDescriptor, settings: ModeSettings) -> CompilationResult:
        started_at = datetime.utcnow()
        package_dir = self.package_dir(descriptor)

        # Stale files from a previous pass must not leak into this result
        if package_dir.exists():
            shutil.rmtree(package_dir)
        package_dir.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(descriptor, settings)
        logger.info(f"Compiling target {descriptor.id}: {' '.join(cmd)}")

        diagnostics: List[str] = []
        success = False

        try:
            proc = subprocess.run(
                cmd,
                cwd=str(descriptor.source_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds
            )
            diagnostics = _tail(proc.stderr)
            success = proc.returncode == 0
            if not success:
                diagnostics.append(f"wasm-pack exited with code {proc.returncode}")
        except subprocess.TimeoutExpired:
            diagnostics.append(f"wasm-pack timed out after {self.timeout_seconds}s")
        except OSError as e:
            diagnostics.append(f"Failed to run wasm-pack: {e}")

        emitted = set()
        if success:
            # snippets/ holds JS imported by the shim (wasm_bindgen(module = ...))
            emitted = {
                path for path in package_dir.rglob("*")
                if path.is_file() and path.suffix in LOADABLE_SUFFIXES
            } if package_dir.exists() else set()

            if not any(path.suffix == ".wasm" for path in emitted):
                success = False
                diagnostics.append(f"wasm-pack reported success but emitted no .wasm file in {package_dir}")

        result = CompilationResult(
            target_id=descriptor.id,
            success=success,
            output_format=descriptor.output_format,
            emitted_files=frozenset(emitted),
            diagnostics=tuple(diagnostics),
            package_dir=package_dir,
            started_at=started_at,
            completed_at=datetime.utcnow()
        )

        write_compile_manifest(result, descriptor, settings)

        if success:
            logger.info(f"Target {descriptor.id} compiled ({len(emitted)} file(s))")
        else:
            logger.warning(f"Target {descriptor.id} failed to compile")

        return result


def write_compile_manifest(result: CompilationResult, descriptor: TargetDescriptor, settings: ModeSettings) -> Optional[Path]:
    """Write the machine-readable compilation manifest into the package directory."""
    if result.package_dir is None:
        return None

    result.package_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = result.package_dir / COMPILE_MANIFEST_NAME

    data = {
        'target': result.target_id,
        'success': result.success,
        'mode': settings.mode.value,
        'format': result.output_format.value,
        'loading_contract': loading_contract(descriptor),
        'emitted_files': sorted(path.relative_to(result.package_dir).as_posix() for path in result.emitted_files),
        'diagnostics': list(result.diagnostics),
    }
    manifest_path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")
    return manifest_path


def _tail(output: Optional[str]) -> List[str]:
    """Last non-empty lines of compiler output."""
    lines = [line.rstrip() for line in (output or "").splitlines() if line.strip()]
    return lines[-MAX_DIAGNOSTIC_LINES:]
