from __future__ import annotations

from conftest import complete_story, empty_story

from orchestrator.triggers import StoryLocks, StoryWatcher, process_locked, reconcile_stories


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _write(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def test_sweep_processes_only_incomplete_stories(pipeline, store):
    store.create(complete_story("a"))
    store.create(empty_story("b"))
    _write(store.path_for("c"), "{broken")
    lines = []

    summary = reconcile_stories(pipeline, log=lines.append)

    assert summary.total == 3
    assert summary.complete_before == 1
    assert summary.needing_processing == 1
    assert summary.processed == ["b"]
    assert list(summary.failed) == ["c"]
    assert summary.playable_after == 2
    assert "sweep: 3 stories, 1 complete, 1 need processing" in lines
    assert lines[-1] == "sweep done: 2/3 playable, 1 failed"


def test_sweep_includes_forced_complete_stories(pipeline, store, fakes):
    story = complete_story("f")
    story.force_regenerate = True
    store.create(story)

    summary = reconcile_stories(pipeline, log=lambda _m: None)

    assert summary.processed == ["f"]
    assert len(fakes["writer"].calls) == 1


def test_sweep_continues_after_a_failed_pass(pipeline, store, monkeypatch):
    store.create(empty_story("x"))
    store.create(empty_story("y"))
    original = pipeline.process

    def flaky(story_id, force=False):
        if story_id == "x":
            raise RuntimeError("disk full")
        return original(story_id, force=force)

    monkeypatch.setattr(pipeline, "process", flaky)
    lines = []
    summary = reconcile_stories(pipeline, log=lines.append)

    assert summary.processed == ["y"]
    assert summary.failed == {"x": "pass failed"}
    assert summary.playable_after == 1
    assert "story x: pass failed: RuntimeError: disk full" in lines


def test_process_locked_reports_result(pipeline, store):
    store.create(empty_story("z"))
    lines = []
    result = process_locked(pipeline, StoryLocks(), "z", log=lines.append)
    assert result is not None and result.playable
    assert lines == ["story z: stages=scenes,entities,images,audio playable=True audio=complete"]


def test_story_locks_are_per_story():
    locks = StoryLocks()
    assert locks.lock_for("1") is locks.lock_for("1")
    assert locks.lock_for("1") is not locks.lock_for("2")

    with locks.hold("1"):
        assert not locks.lock_for("1").acquire(blocking=False)
        other = locks.lock_for("2")
        assert other.acquire(blocking=False)
        other.release()
    assert locks.lock_for("1").acquire(blocking=False)


def test_watcher_ignores_existing_files_and_debounces_new_ones(tmp_path):
    stories = tmp_path / "stories"
    stories.mkdir()
    _write(str(stories / "old.json"), "{}")
    clock = FakeClock()
    seen = []
    watcher = StoryWatcher(str(stories), debounce_sec=2.0, log=lambda _m: None, clock=clock)
    watcher.on_new_story(seen.append)
    watcher.prime()

    _write(str(stories / "new.json"), "{}")
    _write(str(stories / ".new.json.tmp"), "{}")
    _write(str(stories / "notes.txt"), "x")
    assert watcher.poll_once() == []

    clock.now = 1.0
    assert watcher.poll_once() == []

    clock.now = 2.5
    assert watcher.poll_once() == ["new"]
    assert seen == ["new"]

    clock.now = 10.0
    assert watcher.poll_once() == []
    assert seen == ["new"]


def test_watcher_waits_while_file_is_still_growing(tmp_path):
    stories = tmp_path / "stories"
    stories.mkdir()
    clock = FakeClock()
    watcher = StoryWatcher(str(stories), debounce_sec=2.0, log=lambda _m: None, clock=clock)
    watcher.prime()
    path = str(stories / "big.json")

    _write(path, "{")
    watcher.poll_once()
    clock.now = 3.0
    _write(path, '{"characters": []}')
    assert watcher.poll_once() == []

    clock.now = 4.0
    assert watcher.poll_once() == []
    clock.now = 5.0
    assert watcher.poll_once() == ["big"]


def test_watcher_callback_errors_are_logged(tmp_path):
    stories = tmp_path / "stories"
    stories.mkdir()
    clock = FakeClock()
    lines = []
    watcher = StoryWatcher(str(stories), debounce_sec=0.0, log=lines.append, clock=clock)

    def boom(_story_id):
        raise ValueError("bad record")

    watcher.on_new_story(boom)
    watcher.prime()
    _write(str(stories / "s.json"), "{}")
    watcher.poll_once()
    assert watcher.poll_once() == ["s"]
    assert "watcher: callback failed for s: ValueError: bad record" in lines
