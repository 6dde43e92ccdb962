"""
Base compiler interface for building one target.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

from novabuild.errors import CompileError
from novabuild.modes import ModeSettings
from novabuild.registry import OutputFormat, TargetDescriptor


@dataclass(frozen=True)
class CompilationResult:
    """
    Outcome of one compilation attempt.

    Created exactly once per attempt and never mutated; a retry produces a
    new CompilationResult.
    """
    target_id: str
    success: bool
    output_format: OutputFormat
    emitted_files: FrozenSet[Path] = frozenset()
    diagnostics: Tuple[str, ...] = ()
    package_dir: Optional[Path] = None
    started_at: Optional[datetime] = field(default=None, compare=False)
    completed_at: Optional[datetime] = field(default=None, compare=False)

    def to_error(self) -> CompileError:
        """CompileError describing this failed result."""
        return CompileError(self.target_id, self.diagnostics)


class TargetCompiler(ABC):
    """
    Abstract base class for target compilers.

    Compilers are responsible for:
    1. Invoking the external native compiler for the target's output format
    2. Emitting a package directory with the loadable artifact and loader shim
    3. Returning a structured CompilationResult (never raising on compile failure)
    """

    def ensure_available(self):
        """
        Check that the external toolchain can be invoked.

        Raises:
            ToolchainUnavailableError: If the toolchain is missing
        """

    @abstractmethod
    def compile(self, descriptor: TargetDescriptor, settings: ModeSettings) -> CompilationResult:
        """
        Compile one target.

        Args:
            descriptor: Target to compile
            settings: Active mode settings (debug vs size-optimised output)

        Returns:
            CompilationResult with success/failure, emitted files and diagnostics
        """
        pass
