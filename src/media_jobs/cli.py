import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from .config import resolve_config
from .errors import QueueNotFoundError
from .merge import check_ffmpeg
from .models import MediaJobsConfig
from .projects import ProjectStore
from .providers import HttpGenerationProvider
from .queue import JobType, Runtime
from .storage import create_storage
from .workers import ArtifactFetcher, build_workers

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    for noisy in ("httpx", "httpcore", "botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-jobs", description="Media generation job queue and workers"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config file (default: config/default.yaml)")
    parser.add_argument("--db", type=str, help="Broker database path")
    parser.add_argument("--blob-root", type=str, help="Blob store directory")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ERROR")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # RUN
    run_parser = subparsers.add_parser("run", help="Start all workers until interrupted")
    run_parser.add_argument("--database-url", type=str, help="Project database URL")
    run_parser.add_argument("--temp-dir", type=str, help="Stitching temp directory")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a job")
    enqueue_parser.add_argument("type", choices=[t.value for t in JobType], help="Job type")
    enqueue_parser.add_argument("--project", "-p", required=True, help="Owning project id")
    enqueue_parser.add_argument("--input", "-i", default="{}", help="Input payload as JSON")
    enqueue_parser.add_argument("--job-id", type=str, help="Explicit job id (idempotent)")
    enqueue_parser.add_argument("--priority", type=int, help="Lower runs sooner")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", help="Job id")

    # QUEUE subcommands (info, cancel)
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage queues")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    info_parser = queue_subparsers.add_parser("info", help="Job counts per queue")
    info_parser.add_argument("type", nargs="?", choices=[t.value for t in JobType], help="Job type")

    cancel_parser = queue_subparsers.add_parser("cancel", help="Cancel a pending job")
    cancel_parser.add_argument("job_id", help="Job id")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    return parser


def load_config(args) -> MediaJobsConfig:
    overrides = {
        "db": args.db,
        "blob_root": args.blob_root,
        "log_level": args.log_level,
        "database_url": getattr(args, "database_url", None),
        "temp_dir": getattr(args, "temp_dir", None),
    }
    return resolve_config(overrides, Path(args.config) if args.config else None)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    if args.command == "check":
        print("Checking dependencies...")
        report = check_ffmpeg()
        if report["available"]:
            print(f"✅ ffmpeg found: {report['version']}")
        else:
            print(f"❌ ffmpeg not usable: {report.get('error')}")
            sys.exit(1)
        return

    config = load_config(args)
    setup_logging(config.logging.level)

    if args.command == "run":
        asyncio.run(run_workers(config))
    elif args.command == "enqueue":
        sys.exit(cmd_enqueue(config, args))
    elif args.command == "status":
        sys.exit(cmd_status(config, args.job_id))
    elif args.command == "queue":
        if args.queue_command == "info":
            sys.exit(cmd_queue_info(config, args.type))
        elif args.queue_command == "cancel":
            sys.exit(cmd_queue_cancel(config, args.job_id))
        else:
            parser.parse_args(["queue", "--help"])


def cmd_enqueue(config: MediaJobsConfig, args) -> int:
    try:
        input_data = json.loads(args.input)
    except json.JSONDecodeError as e:
        print(f"Error: --input is not valid JSON: {e}", file=sys.stderr)
        return 2
    if not isinstance(input_data, dict):
        print("Error: --input must be a JSON object", file=sys.stderr)
        return 2

    runtime = Runtime(config).open()
    try:
        job_id = runtime.queues.enqueue(
            args.type, args.project, input_data, job_id=args.job_id, priority=args.priority
        )
    finally:
        runtime.close()
    print(job_id)
    return 0


def cmd_status(config: MediaJobsConfig, job_id: str) -> int:
    runtime = Runtime(config).open()
    try:
        record = runtime.queues.get_job_status(job_id)
    finally:
        runtime.close()

    if record is None:
        print(f"Job not found: {job_id}", file=sys.stderr)
        return 1
    print(json.dumps(record.to_api(), indent=2))
    return 0


def cmd_queue_info(config: MediaJobsConfig, job_type=None) -> int:
    runtime = Runtime(config).open()
    try:
        types = [JobType(job_type)] if job_type else list(JobType)
        infos = [runtime.queues.get_queue_info(t) for t in types]
    except QueueNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        runtime.close()

    print("\n" + "=" * 72)
    print("QUEUE STATUS")
    print("=" * 72)
    print(f"{'Queue':<20}{'Conc.':>6}{'Pending':>9}{'Active':>8}{'Done':>8}{'Dead':>8}{'Total':>8}")
    for info in infos:
        print(
            f"{info['name']:<20}{info['concurrency']:>6}{info['pending']:>9}"
            f"{info['active']:>8}{info['done']:>8}{info['dead']:>8}{info['total']:>8}"
        )
    print("=" * 72)
    return 0


def cmd_queue_cancel(config: MediaJobsConfig, job_id: str) -> int:
    runtime = Runtime(config).open()
    try:
        cancelled = runtime.queues.cancel_job(job_id)
    finally:
        runtime.close()

    if not cancelled:
        print(f"Job {job_id} is not pending (already running, finished, or unknown)", file=sys.stderr)
        return 1
    print(f"Cancelled {job_id}")
    return 0


async def run_workers(config: MediaJobsConfig) -> None:
    """Run every worker until SIGINT/SIGTERM, then drain and shut down."""
    runtime = Runtime(config).open()
    provider = HttpGenerationProvider(config.provider)
    fetcher = ArtifactFetcher(runtime.blob_store, timeout_s=config.stitching.download_timeout_s)
    storage = create_storage(config.storage, runtime.blob_store)

    projects = ProjectStore(config.database.url)
    projects.create_tables()
    await projects.connect()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        workers = build_workers(
            runtime,
            image_provider=provider,
            video_provider=provider,
            text_provider=provider,
            storage=storage,
            fetcher=fetcher,
            projects=projects,
        )
        await runtime.start(workers)
        logger.info("Workers running, press Ctrl+C to stop")
        await stop.wait()
        logger.info("Shutdown requested, draining in-flight jobs")
    finally:
        await runtime.shutdown()
        await fetcher.aclose()
        await provider.aclose()
        await projects.disconnect()


if __name__ == "__main__":
    main()
