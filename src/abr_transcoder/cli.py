import argparse
import shutil
import sys
import uuid
from pathlib import Path

from tqdm import tqdm

from . import pipeline
from .config import resolve_config
from .engine import check_ffmpeg
from .errors import EncodeError
from .log import configure_logging
from .models import ProgressEvent, ProgressStatus
from .progress import InMemoryProgressBus
from .queue import Job
from .runtime import build_queue_factory, build_runtime
from .storage import LocalObjectStore


def _resolve(args):
    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=getattr(args, "config", None))
    configure_logging(config.logging)
    return config


def _open_queue(args):
    config = _resolve(args)
    return build_queue_factory(config.queue)()


def _print_table(title, rows):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for label, value in rows:
        print(f"{label + ':':<22}{value}")
    print("=" * 60)


def _run_encode(args) -> None:
    """One-off local encode of a file, with one progress bar per rung."""
    source = Path(args.input)
    if not source.is_file():
        print(f"❌ Input not found: {source}")
        sys.exit(1)

    config = _resolve(args)
    output = Path(args.output).resolve()
    scratch = output / ".scratch"
    storage = config.storage.model_copy(
        update={
            "backend": "local",
            "local_root": str(output),
            "staging_dir": str(scratch / "staging"),
            "scratch_dir": str(scratch / "output"),
        }
    )
    updates = {"storage": storage}
    if args.rungs:
        wanted = [name.strip() for name in args.rungs.split(",") if name.strip()]
        ladder = [rung for rung in config.ladder if rung.name in wanted]
        unknown = set(wanted) - {rung.name for rung in ladder}
        if unknown:
            print(f"❌ Unknown rung(s): {', '.join(sorted(unknown))}")
            sys.exit(1)
        updates["ladder"] = ladder
    config = config.model_copy(update=updates)

    store = LocalObjectStore(storage.local_root)
    key = f"{storage.source_prefix}/{source.name}"
    store.put_file(key, source)

    bus = InMemoryProgressBus()
    runtime = build_runtime(config, store=store, bus=bus)
    bars = {
        rung.name: tqdm(total=100, desc=rung.name.rjust(6), unit="%", position=i, leave=True)
        for i, rung in enumerate(config.ladder)
    }

    def on_event(event: ProgressEvent) -> None:
        bar = bars.get(event.resolution) if event.resolution else None
        if bar is None:
            return
        if event.percent is not None:
            bar.n = event.percent
        if event.status == ProgressStatus.FAILED.value:
            bar.set_postfix_str("failed")
        bar.refresh()

    job = Job(job_id=str(uuid.uuid4()), video_id=source.stem, source_storage_key=key)
    with bus.subscribe(config.progress.channel, on_event):
        try:
            url = runtime.orchestrator.process(job)
        except EncodeError as e:
            for bar in bars.values():
                bar.close()
            print(f"\n❌ Encode failed: {e}")
            sys.exit(1)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
    for bar in bars.values():
        bar.close()
    print(f"\n✅ Master playlist: {url}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="abr-transcoder", description="Adaptive-bitrate HLS transcoding pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", type=str, help="YAML config overriding config/default.yaml")
    common.add_argument("--db", type=str, help="Queue database path")
    common.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", parents=[common], help="Enqueue a transcode job")
    enqueue_parser.add_argument("--video-id", required=True, help="Video id (progress room)")
    enqueue_parser.add_argument("--key", required=True, help="Source object key (raw_videos/...)")
    enqueue_parser.add_argument("--attempts", type=int, help="Max attempts (default: queue.max_attempts)")
    enqueue_parser.add_argument("--backoff-ms", type=int, help="Exponential backoff base in ms")

    # WORKER
    worker_parser = subparsers.add_parser("worker", parents=[common], help="Run the worker pool")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of job slots")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after this many jobs")
    worker_parser.add_argument(
        "--until-idle", action="store_true", help="Stop when no job is waiting or active"
    )
    worker_parser.add_argument("--storage", choices=["s3", "local"], help="Object store backend")
    worker_parser.add_argument("--bus", choices=["memory", "redis"], help="Progress bus backend")

    # ENCODE (local one-off)
    encode_parser = subparsers.add_parser(
        "encode", parents=[common], help="Encode a local file into an HLS ladder"
    )
    encode_parser.add_argument("--input", "-i", type=str, required=True, help="Input video file")
    encode_parser.add_argument("--output", "-o", type=str, default="output", help="Output directory")
    encode_parser.add_argument("--rungs", type=str, help="Comma-separated rung names (240p,720p)")

    # QUEUE subcommands (status, show, retry, clear)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("status", parents=[common], help="Show queue status")
    show_parser = queue_subparsers.add_parser("show", parents=[common], help="Show one job")
    show_parser.add_argument("job_id", help="Job identifier")
    queue_subparsers.add_parser("retry", parents=[common], help="Retry failed jobs")
    queue_subparsers.add_parser("clear", parents=[common], help="Clear queue")

    args = parser.parse_args(argv)

    if args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "enqueue":
        config = _resolve(args)
        queue = build_queue_factory(config.queue)()
        try:
            job_id = pipeline.enqueue_transcode_job(
                queue,
                args.video_id,
                args.key,
                attempts=args.attempts or config.queue.max_attempts,
                backoff={"type": "exponential", "delay_ms": int(config.queue.backoff_delay_s * 1000)},
            )
        finally:
            queue.close()
        print(job_id)

    elif args.command == "worker":
        config = _resolve(args)
        runtime = build_runtime(config)
        try:
            stats = pipeline.process_queue(
                runtime, max_jobs=args.max_jobs, until_idle=args.until_idle
            )
        finally:
            runtime.close()
        _print_table(
            "WORKER SUMMARY",
            [
                ("Claimed", stats["claimed"]),
                ("Succeeded", stats["succeeded"]),
                ("Failed", stats["failed"]),
                ("Total duration", f"{stats['duration_s']:.2f}s"),
            ],
        )

    elif args.command == "encode":
        _run_encode(args)

    elif args.command == "queue":
        if args.queue_command is None:
            queue_parser.print_help()
            return

        queue = _open_queue(args)
        try:
            if args.queue_command == "status":
                stats = pipeline.get_queue_stats(queue)
                _print_table(
                    "QUEUE STATUS",
                    [
                        ("Waiting", stats["waiting"]),
                        ("Active", stats["active"]),
                        ("Completed", stats["completed"]),
                        ("Failed", stats["failed"]),
                        ("Total", stats["total"]),
                    ],
                )

            elif args.queue_command == "show":
                job = queue.get_job(args.job_id)
                if job is None:
                    print(f"❌ No such job: {args.job_id}")
                    sys.exit(1)
                _print_table(
                    f"JOB {job.job_id}",
                    [
                        ("Video", job.video_id),
                        ("Source", job.source_storage_key),
                        ("Status", job.status),
                        ("Attempts", f"{job.attempt_count}/{job.max_attempts}"),
                        ("Worker", job.worker_id or "-"),
                        ("Result", job.result_url or "-"),
                        ("Last error", job.last_error or "-"),
                    ],
                )
                for t in queue.transitions(job.job_id):
                    line = f"  {t.timestamp.isoformat()}  {t.from_state or '-'} -> {t.to_state}"
                    if t.error_snippet:
                        line += f"  ({t.error_snippet})"
                    print(line)

            elif args.queue_command == "retry":
                pipeline.retry_failed(queue)

            elif args.queue_command == "clear":
                pipeline.clear_queue(queue)
        finally:
            queue.close()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
