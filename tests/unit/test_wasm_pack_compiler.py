"""
Unit tests for the wasm-pack compiler (subprocess mocked).
"""
import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from novabuild.compilers.wasm_pack import COMPILE_MANIFEST_NAME, WasmPackCompiler, loading_contract
from novabuild.errors import ToolchainUnavailableError
from novabuild.modes import BuildMode, settings_for
from novabuild.registry import TargetRegistry


PRODUCTION = settings_for(BuildMode.PRODUCTION)
DEVELOPMENT = settings_for(BuildMode.DEVELOPMENT)


def fake_wasm_pack(emit=("{id}.js", "{id}_bg.wasm", "{id}.d.ts", "package.json"), returncode=0, stderr=""):
    """subprocess.run replacement that writes the given files into --out-dir."""

    def run(cmd, **kwargs):
        out_dir = Path(cmd[cmd.index("--out-dir") + 1])
        out_name = cmd[cmd.index("--out-name") + 1]
        out_dir.mkdir(parents=True, exist_ok=True)
        for pattern in emit:
            target = out_dir / pattern.format(id=out_name)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"\x00asm" if pattern.endswith(".wasm") else b"//")
        return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)

    return run


class TestBuildCommand:
    """Test wasm-pack command construction."""

    @pytest.fixture(autouse=True)
    def setup(self, registry, project):
        self.registry = registry
        self.compiler = WasmPackCompiler(project / ".novabuild")

    def test_module_target_uses_web(self):
        cmd = self.compiler.build_command(self.registry.get('app'), PRODUCTION)

        assert cmd[:2] == ["wasm-pack", "build"]
        assert cmd[cmd.index("--target") + 1] == "web"
        assert "--no-modules-global" not in cmd
        assert "--release" in cmd

    def test_global_target_uses_no_modules(self):
        cmd = self.compiler.build_command(self.registry.get('worker'), DEVELOPMENT)

        assert cmd[cmd.index("--target") + 1] == "no-modules"
        assert cmd[cmd.index("--no-modules-global") + 1] == "native_worker"
        assert "--dev" in cmd
        assert "--release" not in cmd

    def test_out_dir_per_target(self, project):
        cmd = self.compiler.build_command(self.registry.get('app'), DEVELOPMENT)

        assert cmd[cmd.index("--out-dir") + 1] == str(project / ".novabuild" / "targets" / "app" / "pkg")
        assert cmd[cmd.index("--out-name") + 1] == "app"

    def test_extra_flags_appended(self, project):
        registry = TargetRegistry.from_config([
            {'id': 'app', 'source_dir': 'bin/app', 'format': 'module', 'extra_flags': ['--no-typescript']},
        ], project)

        cmd = self.compiler.build_command(registry.get('app'), DEVELOPMENT)

        assert cmd[-1] == "--no-typescript"

    def test_loading_contract(self):
        assert loading_contract(self.registry.get('app')) == "module"
        assert loading_contract(self.registry.get('worker')) == "global:native_worker"


class TestCompile:
    """Test compile() outcomes."""

    @pytest.fixture(autouse=True)
    def setup(self, registry, project):
        self.registry = registry
        self.compiler = WasmPackCompiler(project / ".novabuild", timeout_seconds=30)

    def test_success_collects_loadable_files(self):
        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=fake_wasm_pack()):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert result.success
        assert sorted(p.name for p in result.emitted_files) == ['app.js', 'app_bg.wasm']
        assert result.target_id == 'app'
        assert result.completed_at >= result.started_at

    def test_compile_manifest_written(self):
        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=fake_wasm_pack()):
            result = self.compiler.compile(self.registry.get('worker'), PRODUCTION)

        data = json.loads((result.package_dir / COMPILE_MANIFEST_NAME).read_text())
        assert data['target'] == 'worker'
        assert data['mode'] == 'production'
        assert data['loading_contract'] == 'global:native_worker'
        assert data['emitted_files'] == ['worker.js', 'worker_bg.wasm']

    def test_snippets_collected(self):
        """JS snippets imported by the shim are part of the emitted package."""
        emit = ("{id}.js", "{id}_bg.wasm", "snippets/{id}-0a1b2c/inline0.js", "package.json")

        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=fake_wasm_pack(emit=emit)):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        relative = sorted(p.relative_to(result.package_dir).as_posix() for p in result.emitted_files)
        assert relative == ['app.js', 'app_bg.wasm', 'snippets/app-0a1b2c/inline0.js']

        data = json.loads((result.package_dir / COMPILE_MANIFEST_NAME).read_text())
        assert 'snippets/app-0a1b2c/inline0.js' in data['emitted_files']

    def test_nonzero_exit_is_failed_result(self):
        stderr = "error[E0425]: cannot find value `x` in this scope\n --> src/lib.rs:3:5\n"
        run = fake_wasm_pack(emit=(), returncode=1, stderr=stderr)

        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=run):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert not result.success
        assert result.emitted_files == frozenset()
        assert result.diagnostics[0].startswith("error[E0425]")
        assert result.diagnostics[-1] == "wasm-pack exited with code 1"
        assert result.to_error().target_id == 'app'

    def test_success_without_wasm_is_failure(self):
        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=fake_wasm_pack(emit=("{id}.js",))):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert not result.success
        assert "emitted no .wasm" in result.diagnostics[-1]

    def test_timeout_is_failed_result(self):
        with patch(
            'novabuild.compilers.wasm_pack.subprocess.run',
            side_effect=subprocess.TimeoutExpired(cmd="wasm-pack", timeout=30)
        ):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert not result.success
        assert result.diagnostics == ("wasm-pack timed out after 30s",)

    def test_os_error_is_failed_result(self):
        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=OSError("exec format error")):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert not result.success
        assert "exec format error" in result.diagnostics[0]

    def test_stale_outputs_removed(self):
        """Files from a previous pass never appear in the next result."""
        stale = self.compiler.package_dir(self.registry.get('app')) / "old_bg.wasm"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"stale")

        with patch('novabuild.compilers.wasm_pack.subprocess.run', side_effect=fake_wasm_pack()):
            result = self.compiler.compile(self.registry.get('app'), DEVELOPMENT)

        assert not stale.exists()
        assert 'old_bg.wasm' not in {p.name for p in result.emitted_files}


class TestEnsureAvailable:
    """Test toolchain detection."""

    def test_missing_executable(self, tmp_path):
        compiler = WasmPackCompiler(tmp_path)

        with patch('novabuild.compilers.wasm_pack.shutil.which', return_value=None):
            with pytest.raises(ToolchainUnavailableError, match="cargo install wasm-pack"):
                compiler.ensure_available()

    def test_present_executable(self, tmp_path):
        compiler = WasmPackCompiler(tmp_path)

        with patch('novabuild.compilers.wasm_pack.shutil.which', return_value="/usr/local/bin/wasm-pack"):
            compiler.ensure_available()
