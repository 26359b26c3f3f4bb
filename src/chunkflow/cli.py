import argparse
import sys
import time
from pathlib import Path

from tqdm import tqdm

from .config import resolve_config
from .engine import Engine
from .errors import EngineError
from .ingest import parse_payloads
from .logging_setup import init_logging
from .queue.models import Job, JobStatus


def _build_engine(args) -> Engine:
    cli_dict = {
        "db_path": getattr(args, "db", None),
        "workers": getattr(args, "workers", None),
        "chunk_size": getattr(args, "chunk_size", None),
        "max_retries": getattr(args, "max_retries", None),
        "generator": getattr(args, "generator", None),
        "log_level": getattr(args, "log_level", None),
    }
    config = resolve_config(cli_dict, config_path=getattr(args, "config", None))
    init_logging(config.logging)
    return Engine(config)


def _print_job(job: Job) -> None:
    print("\n" + "=" * 60)
    print(f"JOB {job.id}")
    print("=" * 60)
    print(f"Status:               {job.status.value}")
    print(f"File:                 {job.file_name or '-'}")
    print(f"Content type:         {job.content_type}")
    print(f"Total items:          {job.total_items}")
    print(f"Processed:            {job.processed_count}")
    print(f"Failed:               {job.failed_count}")
    print(f"Progress:             {job.progress_pct:.1f}%")
    if job.error:
        print(f"Error:                {job.error}")
    print("=" * 60)


def _follow_job(engine: Engine, job_id: str) -> Job:
    """Show a progress bar until the job leaves 'processing'."""
    job = engine.controller.get_status(job_id).job
    with engine.broadcaster.subscribe(job_id) as sub, tqdm(
        total=job.total_items, desc=f"Job {job_id[:8]}", unit="item"
    ) as bar:
        bar.update(job.processed_count + job.failed_count)
        while job.status == JobStatus.PROCESSING:
            event = sub.get(timeout=0.5)
            if event is not None:
                bar.n = event.completed + event.failed
                bar.set_postfix(failed=event.failed)
                bar.refresh()
            job = engine.controller.get_status(job_id).job
        bar.n = job.processed_count + job.failed_count
        bar.refresh()
    return job


def _queue_idle(engine: Engine) -> bool:
    stats = engine.queue.stats()
    return stats["pending"] + stats["active"] + stats["delayed"] == 0


def _add_engine_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--db", type=str, help="SQLite database path")
    p.add_argument("--config", "-c", type=str, help="YAML config file (replaces config/local.yaml)")
    p.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="chunkflow", description="Chunked job-processing engine"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Create a job from a file")
    submit_parser.add_argument("file", type=str, help="CSV with a url column, or one payload per line")
    submit_parser.add_argument(
        "--content-type", choices=["company", "person", "news"], default="company",
        help="Prompt template",
    )
    submit_parser.add_argument("--chunk-size", type=int, help="Items per chunk")
    submit_parser.add_argument("--max-retries", type=int, help="Attempts per item")
    submit_parser.add_argument("--no-start", action="store_true", help="Create only, don't start")
    _add_engine_args(submit_parser)

    # JOB CONTROL
    for name, help_text in (
        ("start", "Start a pending job"),
        ("stop", "Stop a processing job"),
        ("resume", "Resume a stopped job"),
        ("delete", "Delete a job and its items"),
        ("status", "Show job status"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("job_id", type=str, help="Job identifier")
        if name in ("start", "resume"):
            p.add_argument("--chunk-size", type=int, help="Items per chunk")
            p.add_argument("--max-retries", type=int, help="Attempts per item")
        _add_engine_args(p)

    retry_parser = subparsers.add_parser("retry", help="Retry failed items")
    retry_parser.add_argument("job_id", type=str, help="Job identifier")
    retry_parser.add_argument(
        "--item", action="append", dest="items", help="Item id to retry (repeatable, default all)"
    )
    retry_parser.add_argument("--max-retries", type=int, help="Attempts per item")
    _add_engine_args(retry_parser)

    export_parser = subparsers.add_parser("export", help="Write job results as CSV")
    export_parser.add_argument("job_id", type=str, help="Job identifier")
    export_parser.add_argument("--output", "-o", type=str, help="Output CSV path")
    _add_engine_args(export_parser)

    # RUN (foreground workers)
    run_parser = subparsers.add_parser("run", help="Run the worker pool and janitor")
    run_parser.add_argument("--workers", "-w", type=int, help="Number of parallel workers")
    run_parser.add_argument(
        "--generator", choices=["stub", "openai", "huggingface", "auto"], help="Generation backend"
    )
    run_parser.add_argument("--job", type=str, help="Follow one job with a progress bar, then exit")
    run_parser.add_argument(
        "--until-idle", action="store_true", help="Exit once the queue has no live entries"
    )
    _add_engine_args(run_parser)

    # JANITOR
    janitor_parser = subparsers.add_parser("janitor", help="Run one reconciliation sweep")
    _add_engine_args(janitor_parser)

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Inspect the chunk queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    _add_engine_args(queue_status_parser)

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--workers", "-w", type=int, help="Number of parallel workers")
    serve_parser.add_argument(
        "--generator", choices=["stub", "openai", "huggingface", "auto"], help="Generation backend"
    )
    _add_engine_args(serve_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    if args.command == "serve":
        _serve(args)
        return

    engine = _build_engine(args)
    try:
        _dispatch(args, engine)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        engine.shutdown()


def _dispatch(args, engine: Engine) -> None:
    controller = engine.controller

    if args.command == "submit":
        path = Path(args.file)
        if not path.exists():
            print(f"Error: file not found: {path}", file=sys.stderr)
            sys.exit(1)
        payloads = parse_payloads(path.read_text(encoding="utf-8-sig"))
        if not payloads:
            print(f"Error: no payloads found in {path}", file=sys.stderr)
            sys.exit(1)
        job = engine.submit(
            payloads,
            file_name=path.name,
            content_type=args.content_type,
            start=not args.no_start,
        )
        _print_job(job)

    elif args.command == "start":
        _print_job(controller.start(args.job_id))

    elif args.command == "stop":
        controller.stop(args.job_id)
        _print_job(controller.get_status(args.job_id).job)

    elif args.command == "resume":
        controller.resume(args.job_id)
        _print_job(controller.get_status(args.job_id).job)

    elif args.command == "retry":
        count = controller.retry_failed(args.job_id, args.items)
        print(f"Reset {count} failed item(s)")
        _print_job(controller.get_status(args.job_id).job)

    elif args.command == "delete":
        controller.delete(args.job_id)
        print(f"Deleted job {args.job_id}")

    elif args.command == "status":
        snapshot = controller.get_status(args.job_id)
        _print_job(snapshot.job)
        p = snapshot.progress
        print(f"Live: {p.processed} completed, {p.failed} failed, {p.pending} pending")

    elif args.command == "export":
        out = controller.export_results(args.job_id, args.output)
        print(f"Wrote {out}")

    elif args.command == "janitor":
        report = engine.janitor.sweep()
        print("\n" + "=" * 60)
        print("JANITOR SWEEP")
        print("=" * 60)
        print(f"Malformed removed:    {report.malformed_removed}")
        print(f"Orphans removed:      {report.orphans_removed}")
        print(f"Orphans flagged:      {report.orphans_flagged}")
        print(f"Stale leases reset:   {report.stale_reset}")
        print(f"Finished pruned:      {report.pruned}")
        print("=" * 60)

    elif args.command == "queue":
        stats = engine.queue.stats()
        print("\n" + "=" * 60)
        print("QUEUE STATUS")
        print("=" * 60)
        print(f"Pending:              {stats['pending']}")
        print(f"Active:               {stats['active']}")
        print(f"Delayed:              {stats['delayed']}")
        print(f"Completed:            {stats['completed']}")
        print(f"Failed:               {stats['failed']}")
        print(f"Total:                {sum(stats.values())}")
        print("=" * 60)

    elif args.command == "run":
        engine.start()
        try:
            if args.job:
                _print_job(_follow_job(engine, args.job))
            elif args.until_idle:
                while not _queue_idle(engine):
                    time.sleep(engine.config.workers.poll_interval_s)
            else:
                print("Workers running, press Ctrl+C to stop")
                while True:
                    time.sleep(1)
        except KeyboardInterrupt:
            print("\nShutting down...")


def _serve(args) -> None:
    import uvicorn

    from .api.main import create_app

    cli_dict = {
        "db_path": args.db,
        "workers": args.workers,
        "generator": args.generator,
        "log_level": args.log_level,
    }
    config = resolve_config(cli_dict, config_path=args.config)
    init_logging(config.logging)
    uvicorn.run(create_app(config=config), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
