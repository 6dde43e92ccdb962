"""
Build mode resolution.

Chooses Development or Production once per invocation and derives the
per-mode settings every other component reads.
"""
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from novabuild.errors import ConfigError


class BuildMode(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class SourceMapStyle(str, Enum):
    INLINE = "inline"
    EXTERNAL = "external"


@dataclass(frozen=True)
class ModeSettings:
    """Settings derived from the build mode."""
    mode: BuildMode
    minify: bool
    source_maps: SourceMapStyle
    watch_enabled: bool
    filename_hashing: bool
    live_reload: bool

    @property
    def is_production(self) -> bool:
        return self.mode is BuildMode.PRODUCTION


def settings_for(mode: BuildMode) -> ModeSettings:
    """Default settings for a mode."""
    if mode is BuildMode.PRODUCTION:
        return ModeSettings(
            mode=mode,
            minify=True,
            source_maps=SourceMapStyle.EXTERNAL,
            watch_enabled=False,
            filename_hashing=True,
            live_reload=False,
        )

    return ModeSettings(
        mode=mode,
        minify=False,
        source_maps=SourceMapStyle.INLINE,
        watch_enabled=True,
        filename_hashing=False,
        live_reload=True,
    )


def resolve(invocation_args: Optional[Mapping[str, Any]] = None, env: Optional[Mapping[str, str]] = None) -> ModeSettings:
    """
    Resolve the active build mode from invocation arguments.

    Args:
        invocation_args: Mapping with optional 'mode' ('development' | 'production')
            and optional 'watch' (False disables watching in development)
        env: Environment used for the NOVABUILD_MODE fallback (default: os.environ)

    Returns:
        ModeSettings for the invocation

    Raises:
        ConfigError: If the mode is unknown
    """
    invocation_args = invocation_args or {}
    env = os.environ if env is None else env

    raw_mode = invocation_args.get('mode') or env.get('NOVABUILD_MODE') or BuildMode.DEVELOPMENT.value
    try:
        mode = BuildMode(str(raw_mode).lower())
    except ValueError:
        raise ConfigError(f"Unknown build mode: {raw_mode!r} (expected 'development' or 'production')")

    settings = settings_for(mode)

    # Watching is only ever switched off; production never watches.
    # Without a watcher there is no dev server to push reloads.
    if invocation_args.get('watch') is False and settings.watch_enabled:
        settings = ModeSettings(
            mode=settings.mode,
            minify=settings.minify,
            source_maps=settings.source_maps,
            watch_enabled=False,
            filename_hashing=settings.filename_hashing,
            live_reload=False,
        )

    return settings
