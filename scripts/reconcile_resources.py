from __future__ import annotations

import argparse
import asyncio

from hostplane.core.config import get_settings
from hostplane.core.logging import configure_logging
from hostplane.providers.factory import close_provider_clients
from hostplane.services.provisioning.queue import get_task_queue
from hostplane.services.provisioning.reconciliation import reconcile_provider


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compare provider servers with managed resources once.")
    parser.add_argument("--provider", default=None, help="Provider name (defaults to PROVIDER_DEFAULT)")
    parser.add_argument(
        "--no-enqueue",
        action="store_true",
        help="Adopt orphans without enqueueing the follow-up create task",
    )
    return parser


async def _run(args: argparse.Namespace) -> None:
    configure_logging()
    provider = args.provider or get_settings().provider_default
    queue = None if args.no_enqueue else get_task_queue()
    try:
        report = await reconcile_provider(provider, queue=queue)
    finally:
        await close_provider_clients()
    print(
        f"checked={report.checked} adopted={len(report.adopted)} "
        f"drifted={len(report.drifted)} orphans={len(report.orphans)}"
    )
    for server_id in report.orphans:
        print(f"orphan provider_resource_id={server_id}")


if __name__ == "__main__":
    asyncio.run(_run(_build_parser().parse_args()))
