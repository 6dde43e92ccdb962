"""
Error taxonomy for novabuild.

Per-target compile failures are carried as data (CompilationResult.success=False).
Only configuration and toolchain problems terminate the process.
"""
from typing import List, Optional, Sequence


class NovabuildError(Exception):
    """Base class for all novabuild errors."""


class ConfigError(NovabuildError):
    """Malformed project configuration or target registry. Fatal, raised before any compile."""


class ToolchainUnavailableError(NovabuildError):
    """External compiler or bundler toolchain could not be found."""


class CompileError(NovabuildError):
    """A single target's native compiler invocation failed."""

    def __init__(self, target_id: str, diagnostics: Sequence[str]):
        self.target_id = target_id
        self.diagnostics = list(diagnostics)
        summary = self.diagnostics[-1] if self.diagnostics else "no diagnostics"
        super().__init__(f"Target '{target_id}' failed to compile: {summary}")


class BuildError(NovabuildError):
    """
    Aggregate failure of a full build.

    Collects every CompileError and UI/asset pass failure of the pass so the
    invoker can report them all at once.
    """

    def __init__(self, failures: List[CompileError], results: Optional[list] = None):
        self.failures = list(failures)
        self.results = list(results or [])
        names = ", ".join(f.target_id for f in self.failures) or "unknown"
        super().__init__(f"Build failed ({len(self.failures)} unit(s)): {names}")

    @property
    def diagnostics(self) -> List[str]:
        """All diagnostics, prefixed by the failing unit."""
        lines = []
        for failure in self.failures:
            for message in failure.diagnostics:
                lines.append(f"[{failure.target_id}] {message}")
        return lines


class WatchIOError(NovabuildError):
    """Filesystem watch could not be established or stopped delivering events."""


class ManifestNotFound(NovabuildError, KeyError):
    """Requested bundle is not present in the published manifest."""

    def __init__(self, bundle_name: str):
        self.bundle_name = bundle_name
        super().__init__(bundle_name)

    def __str__(self) -> str:
        return f"Bundle not found in manifest: {self.bundle_name}"
