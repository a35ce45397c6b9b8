"""Command line entry point: convert a batch of videos with HandBrakeCLI."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional, Sequence

from batchbrake import __version__
from batchbrake.errors import ConverterUnavailableError
from batchbrake.handbrake import HandBrakeConverter
from batchbrake.jobs import JobStatus
from batchbrake.preferences import Preferences, load_preferences
from batchbrake.service import BatchService, build_service

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNAVAILABLE = 2


def collect_files(paths: Sequence[str], prefs: Preferences) -> List[str]:
    """Expand directories one level deep and keep supported video files."""
    files: List[str] = []
    for raw in paths:
        path = os.path.abspath(os.path.expanduser(raw))
        if os.path.isdir(path):
            for name in sorted(os.listdir(path)):
                candidate = os.path.join(path, name)
                if os.path.isfile(candidate) and prefs.is_supported_file(candidate):
                    files.append(candidate)
        elif os.path.isfile(path):
            if prefs.is_supported_file(path):
                files.append(path)
            else:
                logging.getLogger(__name__).warning("Skipping unsupported file: %s", path)
        else:
            logging.getLogger(__name__).warning("No such file or directory: %s", path)
    return files


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchbrake",
        description="Convert a queue of videos with HandBrakeCLI, several at a time.",
    )
    parser.add_argument("files", nargs="*", metavar="FILES", help="Video files or folders to add to the queue")
    parser.add_argument("--session", metavar="PATH", help="Session file to restore and save (default: user settings dir)")
    parser.add_argument("--parallel", type=int, metavar="N", help="Number of conversions to run at once")
    parser.add_argument("--preset", metavar="NAME", help="HandBrake preset for newly added files")
    parser.add_argument("--handbrake", metavar="PATH", help="Path to HandBrakeCLI")
    parser.add_argument(
        "--keep-session",
        action="store_true",
        help="Keep completed videos in the saved session instead of clearing them",
    )
    parser.add_argument("--retry-failed", action="store_true", help="Re-queue failed and cancelled videos")
    parser.add_argument("--delete-source", action="store_true", help="Delete source files after a successful conversion")
    parser.add_argument("--list-presets", action="store_true", help="Print the available HandBrake presets and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not verbose:
        logging.getLogger("batchbrake.jobs").setLevel(logging.WARNING)


def _print_presets(converter: HandBrakeConverter) -> int:
    presets = converter.list_presets()
    if not presets:
        print("No presets found. Is HandBrakeCLI installed?", file=sys.stderr)
        return EXIT_UNAVAILABLE
    for category, names in presets.items():
        print(f"{category}/")
        for name in names:
            print(f"    {name}")
    return EXIT_OK


def _install_signal_handlers(service: BatchService) -> None:
    def _request_stop(signum, _frame):
        if not service.is_running:
            raise KeyboardInterrupt
        service.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def run(service: BatchService, args: argparse.Namespace) -> int:
    service.restore_session()

    if args.parallel is not None:
        service.set_parallelism(args.parallel)
    if args.preset:
        service.settings.default_preset = args.preset
    if args.delete_source:
        service.settings.delete_source_after_conversion = True

    if args.retry_failed:
        for job in service.jobs():
            if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                service.reset_job(job)

    service.add_jobs(collect_files(args.files, service.preferences))

    batch_ids = {job.id for job in service.jobs() if job.status.is_eligible}
    try:
        started = service.start()
    except ConverterUnavailableError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_UNAVAILABLE

    if started:
        while not service.wait(timeout=0.5):
            pass

    unfinished = [
        job
        for job in service.jobs()
        if job.id in batch_ids and job.status in (JobStatus.FAILED, JobStatus.CANCELLED)
    ]
    print(service.status_text)
    if not args.keep_session:
        service.clear_completed()
    return EXIT_FAILED if unfinished else EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.parallel is not None and args.parallel < 1:
        parser.error("--parallel must be at least 1")
    _configure_logging(args.verbose)

    prefs = load_preferences()
    if args.handbrake:
        prefs.handbrake_cli_path = args.handbrake

    service = build_service(prefs, session_path=args.session)
    converter = service.scheduler.converter
    if args.list_presets:
        if not isinstance(converter, HandBrakeConverter):
            return EXIT_UNAVAILABLE
        return _print_presets(converter)

    unsubscribe = service.activity.subscribe(lambda line: print(line, flush=True))
    _install_signal_handlers(service)
    try:
        return run(service, args)
    except KeyboardInterrupt:
        return EXIT_FAILED
    finally:
        service.shutdown()
        unsubscribe()


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    sys.exit(main())
