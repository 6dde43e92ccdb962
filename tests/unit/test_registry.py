"""
Unit tests for the target registry.
"""
import pytest

from novabuild.errors import ConfigError
from novabuild.registry import OutputFormat, TargetDescriptor, TargetRegistry


class TestOutputFormat:
    """Test output format parsing."""

    @pytest.mark.parametrize("value", ["module", "Module", "module_loadable", "ModuleLoadable", "web"])
    def test_module_aliases(self, value):
        assert OutputFormat.parse(value) is OutputFormat.MODULE_LOADABLE

    @pytest.mark.parametrize("value", ["global", "global_injectable", "GlobalInjectable", "no-modules"])
    def test_global_aliases(self, value):
        assert OutputFormat.parse(value) is OutputFormat.GLOBAL_INJECTABLE

    def test_unknown_format(self):
        with pytest.raises(ConfigError, match="Unknown output format"):
            OutputFormat.parse("commonjs")


class TestTargetRegistry:
    """Test registry loading and validation."""

    def test_registry_order_preserved(self, registry):
        assert registry.ids() == ['app', 'worker']
        assert len(registry) == 2
        assert 'app' in registry
        assert 'missing' not in registry

    def test_descriptor_fields(self, registry, project):
        worker = registry.get('worker')

        assert worker.source_dir == (project / "bin" / "worker").resolve()
        assert worker.output_format is OutputFormat.GLOBAL_INJECTABLE
        assert worker.is_global
        assert worker.global_symbol == 'native_worker'

    def test_source_dir_always_watched(self, registry, project):
        app = registry.get('app')

        assert (project / "bin" / "app").resolve() in app.watch_paths
        assert (project / "src").resolve() in app.watch_paths

    def test_default_global_symbol(self, project):
        registry = TargetRegistry.from_config([
            {'id': 'image-worker', 'source_dir': 'bin/worker', 'format': 'global'},
        ], project)

        assert registry.get('image-worker').global_symbol == 'image_worker'

    def test_extra_flags_string_split(self, project):
        registry = TargetRegistry.from_config([
            {'id': 'app', 'source_dir': 'bin/app', 'format': 'module', 'extra_flags': '--no-typescript --weak-refs'},
        ], project)

        assert registry.get('app').extra_flags == ('--no-typescript', '--weak-refs')

    def test_duplicate_id_rejected(self, project):
        with pytest.raises(ConfigError, match="Duplicate target id"):
            TargetRegistry.from_config([
                {'id': 'app', 'source_dir': 'bin/app', 'format': 'module'},
                {'id': 'app', 'source_dir': 'bin/worker', 'format': 'global'},
            ], project)

    def test_shared_source_dir_rejected(self, project):
        with pytest.raises(ConfigError, match="share source directory"):
            TargetRegistry.from_config([
                {'id': 'app', 'source_dir': 'bin/app', 'format': 'module'},
                {'id': 'app2', 'source_dir': 'bin/app/', 'format': 'global'},
            ], project)

    def test_missing_source_dir_rejected(self, project):
        with pytest.raises(ConfigError, match="does not exist"):
            TargetRegistry.from_config([
                {'id': 'ghost', 'source_dir': 'bin/ghost', 'format': 'module'},
            ], project)

    def test_missing_required_fields(self, project):
        with pytest.raises(ConfigError, match="missing required fields: format"):
            TargetRegistry.from_config([{'id': 'app', 'source_dir': 'bin/app'}], project)

    def test_non_dict_entry(self, project):
        with pytest.raises(ConfigError, match="must be a YAML dict"):
            TargetRegistry.from_config(["app"], project)

    def test_get_unknown_target(self, registry):
        with pytest.raises(ConfigError, match="Unknown target"):
            registry.get('missing')

    def test_affected_by(self, registry, project):
        assert [d.id for d in registry.affected_by(project / "bin" / "worker" / "src" / "lib.rs")] == ['worker']
        assert [d.id for d in registry.affected_by(project / "src" / "lib.rs")] == ['app']
        assert registry.affected_by(project / "www" / "bootstrap.js") == []

    def test_watches_is_not_prefix_match(self, tmp_path):
        """bin/app must not watch bin/app2."""
        (tmp_path / "bin" / "app").mkdir(parents=True)
        descriptor = TargetDescriptor(
            id='app',
            source_dir=tmp_path / "bin" / "app",
            output_format=OutputFormat.MODULE_LOADABLE,
            watch_paths=frozenset([tmp_path / "bin" / "app"])
        )

        assert descriptor.watches(tmp_path / "bin" / "app" / "src" / "lib.rs")
        assert not descriptor.watches(tmp_path / "bin" / "app2" / "src" / "lib.rs")
