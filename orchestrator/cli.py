"""CLI entrypoint for story reconciliation, watching and status."""
import argparse
import json
import signal
import threading
from typing import Callable, List, Optional

from .errors import StoryStoreError
from .pipeline import StoryPipeline
from .triggers import StoryLocks, StoryWatcher, process_locked, reconcile_stories


def cmd_sweep(pipeline: StoryPipeline, args: argparse.Namespace) -> int:
    summary = reconcile_stories(pipeline)
    return 1 if summary.failed else 0


def cmd_watch(pipeline: StoryPipeline, args: argparse.Namespace) -> int:
    locks = StoryLocks()
    watcher = StoryWatcher(
        pipeline.config.stories_dir,
        debounce_sec=pipeline.config.watch_debounce_sec,
        poll_interval_sec=pipeline.config.watch_poll_interval_sec,
    )
    watcher.on_new_story(lambda story_id: process_locked(pipeline, locks, story_id))
    # Prime before the sweep so records created during it are still reported.
    watcher.start()
    if not args.no_sweep:
        reconcile_stories(pipeline, locks=locks)
    stop = threading.Event()

    def _shutdown(signum: int, _frame: object) -> None:
        print(f"received signal {signum}, stopping watcher", flush=True)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    stop.wait()
    watcher.stop()
    return 0


def cmd_process(pipeline: StoryPipeline, args: argparse.Namespace) -> int:
    result = pipeline.process(args.story_id, force=args.force)
    print(
        json.dumps(
            {
                "story_id": result.story_id,
                "has_changes": result.has_changes,
                "playable": result.playable,
                "stages_run": result.stages_run,
                "skipped": result.skipped,
                "summary": result.report.summary(),
            },
            ensure_ascii=True,
            indent=2,
        )
    )
    return 0 if result.playable else 2


def cmd_status(pipeline: StoryPipeline, args: argparse.Namespace) -> int:
    story_ids = [args.story_id] if args.story_id else pipeline.store.list_ids()
    for story_id in story_ids:
        story = pipeline.store.read(story_id)
        report = pipeline.status_of(story)
        held = pipeline.held_stages(story, report)
        if args.verbose:
            print(json.dumps({"story_id": story_id, **report.to_dict(), "held": held}, ensure_ascii=True, indent=2))
        else:
            row = {"story_id": story_id, **report.summary()}
            if held:
                row["held"] = held
            print(json.dumps(row, ensure_ascii=True, sort_keys=True))
    return 0


def cmd_regenerate(pipeline: StoryPipeline, args: argparse.Namespace) -> int:
    enabled = not args.off
    pipeline.store.set_force_regenerate(args.story_id, enabled)
    print(f"story {args.story_id}: forceRegenerate={'on' if enabled else 'off'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate, regenerate and assemble stories")
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Process every story that is not playable")
    sweep.set_defaults(func=cmd_sweep)

    watch = sub.add_parser("watch", help="Sweep, then process new story files as they appear")
    watch.add_argument("--no-sweep", action="store_true", help="Skip the startup sweep")
    watch.set_defaults(func=cmd_watch)

    process = sub.add_parser("process", help="Run one pass over a story")
    process.add_argument("story_id")
    process.add_argument("--force", action="store_true", help="Re-run every stage regardless of validation")
    process.set_defaults(func=cmd_process)

    status = sub.add_parser("status", help="Print completeness reports")
    status.add_argument("story_id", nargs="?", default=None)
    status.add_argument("--verbose", "-v", action="store_true", help="Print per-scene problems")
    status.set_defaults(func=cmd_status)

    regen = sub.add_parser("regenerate", help="Set the force-regenerate flag on a story")
    regen.add_argument("story_id")
    regen.add_argument("--off", action="store_true", help="Clear the flag instead")
    regen.set_defaults(func=cmd_regenerate)
    return parser


def main(
    argv: Optional[List[str]] = None,
    pipeline_factory: Callable[[], StoryPipeline] = StoryPipeline.from_env,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    pipeline = pipeline_factory()
    try:
        return args.func(pipeline, args)
    except StoryStoreError as err:
        print(f"error: {err}", flush=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
