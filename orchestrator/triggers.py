"""Triggers that start story passes: startup sweep and new-file watcher."""
from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from .errors import format_exception
from .pipeline import PassResult, StoryPipeline
from .story_store import STORY_SUFFIX

StoryCallback = Callable[[str], None]


def _print(message: str) -> None:
    print(message, flush=True)


class StoryLocks:
    """One lock per story id so passes over the same story never overlap."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, story_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(story_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[story_id] = lock
            return lock

    @contextmanager
    def hold(self, story_id: str) -> Iterator[None]:
        with self.lock_for(story_id):
            yield


@dataclass
class SweepSummary:
    total: int = 0
    complete_before: int = 0
    needing_processing: int = 0
    processed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    playable_after: int = 0


def process_locked(
    pipeline: StoryPipeline,
    locks: StoryLocks,
    story_id: str,
    log: Callable[[str], None] = _print,
) -> Optional[PassResult]:
    """Run one pass under the story lock; failures are logged, not raised."""
    with locks.hold(story_id):
        try:
            result = pipeline.process(story_id)
        except Exception as err:
            log(f"story {story_id}: pass failed: {format_exception(err)}")
            return None
    log(
        f"story {story_id}: stages={','.join(result.stages_run) or '-'} "
        f"playable={result.playable} audio={result.report.audio.state.value}"
    )
    return result


def reconcile_stories(
    pipeline: StoryPipeline,
    locks: Optional[StoryLocks] = None,
    log: Callable[[str], None] = _print,
) -> SweepSummary:
    """Bring every stored story up to date, one at a time."""
    locks = locks or StoryLocks()
    summary = SweepSummary()
    story_ids = pipeline.store.list_ids()
    summary.total = len(story_ids)
    pending: List[str] = []
    for story_id in story_ids:
        try:
            story = pipeline.store.read(story_id)
        except Exception as err:
            summary.failed[story_id] = format_exception(err)
            log(f"story {story_id}: unreadable: {summary.failed[story_id]}")
            continue
        report = pipeline.status_of(story)
        if report.needs_processing or story.force_regenerate:
            pending.append(story_id)
        else:
            summary.complete_before += 1
    summary.needing_processing = len(pending)
    log(
        f"sweep: {summary.total} stories, {summary.complete_before} complete, "
        f"{summary.needing_processing} need processing"
    )

    for story_id in pending:
        result = process_locked(pipeline, locks, story_id, log=log)
        if result is None:
            summary.failed[story_id] = "pass failed"
        else:
            summary.processed.append(story_id)

    for story_id in story_ids:
        if story_id in summary.failed:
            continue
        try:
            if pipeline.status(story_id).playable:
                summary.playable_after += 1
        except Exception as err:
            log(f"story {story_id}: status failed: {format_exception(err)}")
    log(f"sweep done: {summary.playable_after}/{summary.total} playable, {len(summary.failed)} failed")
    return summary


class StoryWatcher:
    """Poll the stories directory and fire once per new record after a quiet period.

    Files present when the watcher starts are not reported; the startup
    sweep owns them. A file fires once its size and mtime have been stable
    for ``debounce_sec``.
    """

    def __init__(
        self,
        stories_dir: str,
        debounce_sec: float = 2.0,
        poll_interval_sec: float = 1.0,
        log: Callable[[str], None] = _print,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stories_dir = stories_dir
        self.debounce_sec = debounce_sec
        self.poll_interval_sec = poll_interval_sec
        self.log = log
        self.clock = clock
        self._callbacks: List[StoryCallback] = []
        self._known: set[str] = set()
        self._pending: Dict[str, tuple] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_new_story(self, callback: StoryCallback) -> None:
        self._callbacks.append(callback)

    def prime(self) -> None:
        self._known = set(self._scan())
        self._pending.clear()

    def poll_once(self) -> List[str]:
        """Scan once; return the story ids fired during this scan."""
        now = self.clock()
        fired: List[str] = []
        for name, signature in self._scan().items():
            if name in self._known:
                continue
            previous = self._pending.get(name)
            if previous is None or previous[0] != signature:
                self._pending[name] = (signature, now)
                continue
            if now - previous[1] < self.debounce_sec:
                continue
            self._known.add(name)
            del self._pending[name]
            story_id = name[: -len(STORY_SUFFIX)]
            self.log(f"watcher: new story file {name}")
            self._fire(story_id)
            fired.append(story_id)
        return fired

    def start(self) -> None:
        if self._thread is not None:
            return
        self.prime()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="story-watcher", daemon=True)
        self._thread.start()
        self.log(f"watcher: monitoring {self.stories_dir}")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval_sec * 2 + 1)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except OSError as err:
                self.log(f"watcher: scan failed: {format_exception(err)}")
            self._stop.wait(self.poll_interval_sec)

    def _scan(self) -> Dict[str, tuple]:
        found: Dict[str, tuple] = {}
        for name in os.listdir(self.stories_dir):
            if name.startswith(".") or not name.endswith(STORY_SUFFIX):
                continue
            try:
                st = os.stat(os.path.join(self.stories_dir, name))
            except FileNotFoundError:
                continue
            found[name] = (st.st_size, st.st_mtime)
        return found

    def _fire(self, story_id: str) -> None:
        for callback in self._callbacks:
            try:
                callback(story_id)
            except Exception as err:
                self.log(f"watcher: callback failed for {story_id}: {format_exception(err)}")
