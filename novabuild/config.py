"""
Project configuration loader for novabuild.

Loads the project YAML file (default: novabuild.yaml) and applies environment
overrides. Target entries are kept raw here and validated by the registry.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from novabuild.errors import ConfigError


DEFAULT_CONFIG_NAME = "novabuild.yaml"
DEFAULT_DEBOUNCE_MS = 300


@dataclass
class UiConfig:
    """UI bundling pass configuration."""
    entries: List[Path]
    stylesheet: Optional[Path] = None
    watch_paths: List[Path] = field(default_factory=list)
    app_target: Optional[str] = None
    run_export: str = "run_app"
    command: List[str] = field(default_factory=lambda: ["npx", "webpack"])
    timeout_seconds: int = 600


@dataclass
class BuildConfig:
    """Resolved project configuration."""
    project_root: Path
    build_dir: Path
    dist_dir: Path
    targets: List[Dict[str, Any]]
    ui: Optional[UiConfig] = None
    assets: Dict[str, Path] = field(default_factory=dict)
    jobs: int = 4
    compile_timeout_seconds: int = 900
    dev_host: str = "127.0.0.1"
    dev_port: int = 9000
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    watch_queue_size: int = 1024
    watch_polling: bool = False
    config_path: Optional[Path] = None

    @classmethod
    def from_yaml(cls, yaml_path: Path, env: Optional[Dict[str, str]] = None) -> 'BuildConfig':
        """
        Load project configuration from YAML file.

        Args:
            yaml_path: Path to project YAML config file
            env: Environment mapping for overrides (default: os.environ)

        Returns:
            BuildConfig instance

        Raises:
            ConfigError: If the file is missing, malformed, or lacks required fields
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise ConfigError(f"Project config not found: {yaml_path}")

        try:
            with open(yaml_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {yaml_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Invalid project config in {yaml_path}: must be a YAML dict")

        return cls.from_dict(data, base_dir=yaml_path.resolve().parent, env=env, config_path=yaml_path)

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        base_dir: Path,
        env: Optional[Dict[str, str]] = None,
        config_path: Optional[Path] = None
    ) -> 'BuildConfig':
        """Build configuration from an already-parsed mapping."""
        env = os.environ if env is None else env

        targets = data.get('targets')
        if not targets or not isinstance(targets, list):
            raise ConfigError("Project config must declare a non-empty 'targets' list")

        project_root = (base_dir / data.get('project_root', '.')).resolve()

        build_dir = env.get('NOVABUILD_BUILD_DIR') or data.get('build_dir', '.novabuild')
        dist_dir = env.get('NOVABUILD_DIST_DIR') or data.get('dist_dir', 'dist')

        dev_server = data.get('dev_server') or {}
        watch = data.get('watch') or {}

        config = cls(
            project_root=project_root,
            build_dir=(project_root / build_dir).resolve(),
            dist_dir=(project_root / dist_dir).resolve(),
            targets=targets,
            ui=_parse_ui(data.get('ui'), project_root),
            assets={
                str(name): (project_root / path).resolve()
                for name, path in (data.get('assets') or {}).items()
            },
            jobs=_int(env.get('NOVABUILD_JOBS', data.get('jobs', 4)), 'jobs'),
            compile_timeout_seconds=_int(data.get('compile_timeout_seconds', 900), 'compile_timeout_seconds'),
            dev_host=env.get('NOVABUILD_DEV_HOST', dev_server.get('host', '127.0.0.1')),
            dev_port=_int(env.get('NOVABUILD_DEV_PORT', dev_server.get('port', 9000)), 'dev_server.port'),
            debounce_ms=_int(env.get('NOVABUILD_DEBOUNCE_MS', watch.get('debounce_ms', DEFAULT_DEBOUNCE_MS)), 'watch.debounce_ms'),
            watch_queue_size=_int(watch.get('queue_size', 1024), 'watch.queue_size'),
            watch_polling=_bool(env.get('NOVABUILD_WATCH_POLLING', watch.get('polling', False))),
            config_path=config_path,
        )

        if config.jobs < 1:
            raise ConfigError("'jobs' must be at least 1")
        if config.debounce_ms < 0:
            raise ConfigError("'watch.debounce_ms' must not be negative")

        return config

    def ignored_roots(self) -> List[Path]:
        """Directories whose changes never trigger a rebuild (build outputs)."""
        return [self.build_dir, self.dist_dir]


def _parse_ui(data: Optional[Dict[str, Any]], project_root: Path) -> Optional[UiConfig]:
    """Parse the optional 'ui' section."""
    if not data:
        return None

    if not isinstance(data, dict):
        raise ConfigError("'ui' section must be a YAML dict")

    entries = data.get('entries')
    if isinstance(entries, str):
        entries = [entries]
    if not entries:
        raise ConfigError("'ui.entries' must list at least one entry script")

    stylesheet = data.get('stylesheet')
    command = data.get('command', ["npx", "webpack"])
    if isinstance(command, str):
        command = command.split()

    return UiConfig(
        entries=[(project_root / entry).resolve() for entry in entries],
        stylesheet=(project_root / stylesheet).resolve() if stylesheet else None,
        watch_paths=[(project_root / p).resolve() for p in data.get('watch_paths', [])],
        app_target=data.get('app_target'),
        run_export=data.get('run_export', 'run_app'),
        command=list(command),
        timeout_seconds=_int(data.get('timeout_seconds', 600), 'ui.timeout_seconds'),
    )


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}")


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def find_config(start: Optional[Path] = None) -> Path:
    """
    Locate the project config file.

    Walks up from start (default: cwd) looking for novabuild.yaml.

    Raises:
        ConfigError: If no config file is found
    """
    current = Path(start or Path.cwd()).resolve()
    for directory in [current] + list(current.parents):
        candidate = directory / DEFAULT_CONFIG_NAME
        if candidate.exists():
            return candidate

    raise ConfigError(
        f"No {DEFAULT_CONFIG_NAME} found in {current} or any parent directory\n\n"
        f"To create one:\n"
        f"  targets:\n"
        f"    - id: app\n"
        f"      source_dir: bin/app\n"
        f"      format: module\n"
    )
