"""
Watch scheduler for development mode.

A single reactive loop consumes WatchEvents from a bounded channel and moves
through idle -> debouncing -> rebuilding -> idle. It never compiles inline:
rebuilds are handed to a one-slot executor that drives the BuildGraph, and
events arriving while a rebuild runs are coalesced into the next cycle.
"""
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from novabuild.errors import NovabuildError, WatchIOError
from novabuild.graph import BuildGraph, BuildReport
from novabuild.modes import ModeSettings


logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.3
CARGO_TARGET_DIR = "target"


class WatchState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    REBUILDING = "rebuilding"


@dataclass(frozen=True)
class WatchEvent:
    """A filesystem change. Discarded once absorbed into a debounce window."""
    changed_path: Path
    timestamp: float


@dataclass
class RebuildPlan:
    """Units affected by a set of changed paths."""
    targets: List[str] = field(default_factory=list)
    ui: bool = False
    asset_groups: List[str] = field(default_factory=list)
    full: bool = False

    @property
    def empty(self) -> bool:
        return not (self.targets or self.ui or self.asset_groups)


class WatchScheduler:
    """
    Debouncing rebuild scheduler.

    Drive it with run() in its own thread, or call step() directly (tests).
    """

    def __init__(
        self,
        graph: BuildGraph,
        settings: ModeSettings,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        queue_size: int = 1024,
        ignored_roots: Iterable[Path] = (),
        clock: Callable[[], float] = time.monotonic,
        on_cycle: Optional[Callable[[BuildReport], None]] = None
    ):
        """
        Initialize watch scheduler.

        Args:
            graph: Build graph to drive
            settings: Active mode settings
            debounce_seconds: Quiet period before a rebuild starts
            queue_size: Capacity of the event channel
            ignored_roots: Directories whose changes are ignored (build outputs);
                each target's cargo target/ directory is always ignored
            clock: Monotonic clock
            on_cycle: Callback invoked with every finished rebuild report
        """
        self.graph = graph
        self.settings = settings
        self.debounce_seconds = debounce_seconds
        self.ignored_roots = [Path(p) for p in ignored_roots]
        # cargo writes into each crate's target/ while wasm-pack runs
        self.ignored_roots.extend(d.source_dir / CARGO_TARGET_DIR for d in graph.registry)
        self.clock = clock
        self.on_cycle = on_cycle

        self.events: "queue.Queue[WatchEvent]" = queue.Queue(maxsize=queue_size)
        self.state = WatchState.IDLE
        self.cycles = 0
        self.last_report: Optional[BuildReport] = None

        self._pending: Set[Path] = set()
        self._deadline = 0.0
        self._overflow = threading.Event()
        self._stop = threading.Event()
        self._needs_full = graph.manifest.version == 0
        self._rebuild: Optional[Future] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="novabuild-rebuild")

    def notify(self, path: Path):
        """Enqueue a change (called from the observer thread)."""
        self.submit(WatchEvent(changed_path=Path(path), timestamp=self.clock()))

    def submit(self, event: WatchEvent, timeout: float = 0.5):
        """
        Put an event on the channel.

        Blocks up to timeout when the channel is full; after that the next
        cycle is forced to rebuild everything instead of losing the change.
        """
        try:
            self.events.put(event, timeout=timeout)
        except queue.Full:
            if not self._overflow.is_set():
                logger.warning("Watch event channel full; next rebuild will cover all targets")
            self._overflow.set()

    def force_full_rebuild(self):
        """Make the next cycle rebuild every unit."""
        self._overflow.set()

    def is_ignored(self, path: Path) -> bool:
        path = Path(path)
        return any(path == root or root in path.parents for root in self.ignored_roots)

    def plan(self, paths: Iterable[Path], full: bool = False) -> RebuildPlan:
        """Compute the affected targets, UI pass and asset groups."""
        registry = self.graph.registry
        bundler = self.graph.bundler
        assets = self.graph.assets

        if full:
            return RebuildPlan(
                targets=registry.ids(),
                ui=bundler is not None,
                asset_groups=assets.names() if assets else [],
                full=True
            )

        plan = RebuildPlan()
        affected_targets: Set[str] = set()
        affected_groups: Set[str] = set()

        for path in paths:
            affected_targets.update(d.id for d in registry.affected_by(path))
            if bundler is not None and bundler.watches(path):
                plan.ui = True
            if assets is not None:
                affected_groups.update(assets.affected_by(path))

        plan.targets = [tid for tid in registry.ids() if tid in affected_targets]
        plan.asset_groups = sorted(affected_groups)
        return plan

    def step(self, timeout: float = 0.1):
        """One iteration of the reactive loop."""
        self._collect_finished()

        wait = timeout
        if self.state is WatchState.DEBOUNCING:
            wait = max(0.0, min(timeout, self._deadline - self.clock()))

        self._drain(wait)
        self._collect_finished()

        if self.state is WatchState.DEBOUNCING and self.clock() >= self._deadline:
            self._start_rebuild()

    def run(self, watcher: Optional['FilesystemWatcher'] = None, poll_interval: float = 0.1):
        """Run until stop() is called."""
        logger.info(f"Watch scheduler started (debounce {int(self.debounce_seconds * 1000)}ms)")
        try:
            while not self._stop.is_set():
                self.step(poll_interval)
                if watcher is not None:
                    watcher.ensure_alive()
        finally:
            self.shutdown()

    def stop(self):
        self._stop.set()

    def shutdown(self):
        """Wait for an in-flight rebuild and release the executor."""
        self._executor.shutdown(wait=True)
        self._collect_finished()

    def wait_for_rebuild(self, timeout: Optional[float] = None) -> Optional[BuildReport]:
        """Block until the in-flight rebuild (if any) finishes and process its result."""
        if self._rebuild is None:
            return None
        self._rebuild.exception(timeout=timeout)
        self._collect_finished()
        return self.last_report

    def _drain(self, wait: float):
        try:
            if wait > 0:
                event = self.events.get(timeout=wait)
            else:
                event = self.events.get_nowait()
        except queue.Empty:
            event = None

        while event is not None:
            self._absorb(event)
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                event = None

        if self._overflow.is_set() and self.state is WatchState.IDLE:
            self._enter_debouncing()

    def _absorb(self, event: WatchEvent):
        if self.is_ignored(event.changed_path):
            return

        self._pending.add(Path(event.changed_path))

        if self.state is WatchState.REBUILDING:
            # Coalesced into the cycle after the current rebuild
            return

        # Each event resets the debounce timer
        self._enter_debouncing()

    def _enter_debouncing(self):
        self.state = WatchState.DEBOUNCING
        self._deadline = self.clock() + self.debounce_seconds

    def _start_rebuild(self):
        paths = self._pending
        self._pending = set()
        full = self._needs_full or self._overflow.is_set()
        self._overflow.clear()

        plan = self.plan(paths, full=full)
        if plan.empty:
            logger.debug(f"No target affected by {len(paths)} change(s)")
            self.state = WatchState.IDLE
            return

        logger.info(
            f"Rebuilding after {len(paths)} change(s): targets={plan.targets} "
            f"ui={plan.ui} assets={plan.asset_groups}"
        )
        self.state = WatchState.REBUILDING
        self._rebuild = self._executor.submit(self._execute, plan)

    def _execute(self, plan: RebuildPlan) -> BuildReport:
        report = self.graph.run(
            self.settings,
            targets=plan.targets,
            ui=plan.ui,
            asset_groups=plan.asset_groups
        )
        if plan.full and report.published:
            self._needs_full = False
        return report

    def _collect_finished(self):
        future = self._rebuild
        if future is None or not future.done():
            return

        self._rebuild = None
        self.cycles += 1

        try:
            report = future.result()
        except NovabuildError as e:
            logger.error(f"Rebuild failed: {e}")
            self._needs_full = True
        except Exception:
            # e.g. a source file removed between scan and copy; keep watching
            logger.exception("Rebuild crashed; next cycle rebuilds everything")
            self._needs_full = True
        else:
            self.last_report = report
            if report.failures:
                logger.warning(f"Rebuild finished with {len(report.failures)} failing unit(s); stale entries kept")
            if self.on_cycle is not None:
                self.on_cycle(report)

        if self._pending or self._overflow.is_set():
            self._enter_debouncing()
        else:
            self.state = WatchState.IDLE


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events to the scheduler channel."""

    def __init__(self, scheduler: WatchScheduler):
        super().__init__()
        self.scheduler = scheduler

    def on_created(self, event):
        self.scheduler.notify(Path(event.src_path))

    def on_modified(self, event):
        if not event.is_directory:
            self.scheduler.notify(Path(event.src_path))

    def on_deleted(self, event):
        self.scheduler.notify(Path(event.src_path))

    def on_moved(self, event):
        self.scheduler.notify(Path(event.src_path))
        self.scheduler.notify(Path(event.dest_path))


def minimal_roots(paths: Iterable[Path]) -> List[Path]:
    """Existing directories to watch, dropping any nested inside another."""
    existing = sorted({Path(p) if Path(p).is_dir() else Path(p).parent for p in paths if Path(p).exists()})
    roots: List[Path] = []
    for path in existing:
        if not any(root == path or root in path.parents for root in roots):
            roots.append(path)
    return roots


def watch_paths_for(graph: BuildGraph) -> List[Path]:
    """Every path whose changes can affect the graph."""
    paths: List[Path] = []
    for descriptor in graph.registry:
        paths.extend(descriptor.watch_paths)
    if graph.bundler is not None:
        paths.extend(graph.bundler.watch_roots())
    if graph.assets is not None:
        paths.extend(graph.assets.groups.values())
    return minimal_roots(paths)


class FilesystemWatcher:
    """
    watchdog observer feeding a WatchScheduler.

    Falls back to the polling observer when native notifications fail, and
    raises WatchIOError when polling fails too.
    """

    def __init__(self, scheduler: WatchScheduler, roots: Iterable[Path], polling: bool = False):
        self.scheduler = scheduler
        self.roots = list(roots)
        self.polling = polling
        self.observer = None

    def start(self):
        """
        Start observing.

        Raises:
            WatchIOError: If neither native nor polling observation can start
        """
        if not self.roots:
            raise WatchIOError("Nothing to watch: no configured watch path exists")

        if not self.polling:
            try:
                self.observer = self._start_observer(Observer())
                return
            except (OSError, RuntimeError) as e:
                logger.warning(f"Native file watching unavailable ({e}); falling back to polling")
                self.polling = True

        try:
            self.observer = self._start_observer(PollingObserver())
        except (OSError, RuntimeError) as e:
            raise WatchIOError(f"Could not start file watcher: {e}") from e

    def _start_observer(self, observer):
        handler = _ChangeHandler(self.scheduler)
        for root in self.roots:
            observer.schedule(handler, str(root), recursive=True)
        observer.start()
        logger.info(f"Watching {len(self.roots)} path(s){' (polling)' if isinstance(observer, PollingObserver) else ''}")
        return observer

    def ensure_alive(self):
        """
        Restart a dead observer in polling mode.

        Raises:
            WatchIOError: If the observer died and polling cannot take over
        """
        if self.observer is None or self.observer.is_alive():
            return

        if self.polling:
            raise WatchIOError("File watcher stopped unexpectedly")

        logger.warning("File watcher stopped unexpectedly; restarting with polling")
        self.polling = True
        try:
            self.observer = self._start_observer(PollingObserver())
        except (OSError, RuntimeError) as e:
            raise WatchIOError(f"Could not restart file watcher: {e}") from e

        # Changes during the outage are unknown
        self.scheduler.force_full_rebuild()

    def stop(self):
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
