"""Standalone worker process.

    doc-pipeline-worker conversion      # convert documents to PDF
    doc-pipeline-worker metadata        # extract document properties
    doc-pipeline-worker all --concurrency 4
    doc-pipeline-worker requeue <file_id> [--only metadata|conversion]

The worker roles start a Celery worker consuming the matching queue(s).
"""

import argparse
import logging

from .celery_app import CONVERSION_QUEUE, METADATA_QUEUE, app
from .components import Components, build_components
from .config import Settings
from .conversion.errors import NotFoundError
from .logger import configure_logging

logger = logging.getLogger(__name__)

ROLE_QUEUES = {
    "conversion": (CONVERSION_QUEUE,),
    "metadata": (METADATA_QUEUE,),
    "all": (CONVERSION_QUEUE, METADATA_QUEUE),
}


def worker_argv(role: str, concurrency: int, log_level: str) -> list[str]:
    return [
        "worker",
        f"--loglevel={log_level}",
        f"--queues={','.join(ROLE_QUEUES[role])}",
        f"--concurrency={concurrency}",
        f"--hostname={role}@%h",
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="doc-pipeline-worker", description="Run document pipeline queue workers.")
    sub = parser.add_subparsers(dest="command", required=True)
    for role in ROLE_QUEUES:
        p = sub.add_parser(role, help=f"run the {role} worker(s)")
        p.add_argument("--concurrency", type=int, default=None, help="concurrent jobs (default: WORKERS)")
    rq = sub.add_parser("requeue", help="enqueue the jobs for a stored document again")
    rq.add_argument("file_id")
    rq.add_argument("--only", choices=("metadata", "conversion"), default=None)
    return parser


def main(argv: list[str] | None = None, components: Components | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "requeue":
        components = components or build_components(settings)
        try:
            queued = components.intake().requeue(
                args.file_id,
                metadata=args.only in (None, "metadata"),
                conversion=args.only in (None, "conversion"),
            )
        except NotFoundError as e:
            logger.error("Cannot requeue: %s", e)
            return 1
        logger.info("Requeued %s on %s", args.file_id, ", ".join(queued) or "nothing")
        return 0 if queued else 1

    app.worker_main(worker_argv(args.command, args.concurrency or settings.workers, settings.log_level))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
