from __future__ import annotations

import argparse
import asyncio
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from hostplane.core.logging import configure_logging
from hostplane.domain.state import STATUS_FAILED
from hostplane.persistence.db import SessionLocal
from hostplane.persistence.repos import resources as resources_repo
from hostplane.services.provisioning.queue import ProvisioningTask, TaskQueue, get_task_queue


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered provisioning tasks.")
    parser.add_argument("task_ids", nargs="*", help="Task ids to replay (default: list only)")
    parser.add_argument("--all", action="store_true", help="Replay every dead-lettered task")
    parser.add_argument("--limit", type=int, default=100, help="Maximum tasks to list or replay")
    return parser


async def _skip_reason(session_factory: Callable[[], AsyncSession], task: ProvisioningTask) -> str | None:
    # A dead letter already marked its resource failed; create and resize then do nothing on replay.
    if task.operation == "delete":
        return None
    async with session_factory() as session:
        resource = await resources_repo.get_resource_by_id(session, task.resource_id)
    if resource is None or resource.status != STATUS_FAILED:
        return None
    if task.operation == "create" and resource.provisioned_at is None:
        return f"resource is failed; use POST /v1/servers/{resource.id}/retry"
    return f"resource is failed; use DELETE /v1/servers/{resource.id}"


async def replay(
    queue: TaskQueue,
    task_ids: list[str] | None = None,
    *,
    replay_all: bool = False,
    limit: int = 100,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
) -> int:
    dead = await queue.dead_letters(limit=limit)
    if not task_ids and not replay_all:
        for task in dead:
            print(
                f"{task.task_id} operation={task.operation} resource_id={task.resource_id} "
                f"attempts={task.attempts} last_error={task.last_error}"
            )
        print(f"dead_letters={len(dead)}")
        return 0
    by_id = {task.task_id: task for task in dead}
    replayed = 0
    for task_id in [task.task_id for task in dead] if replay_all else task_ids:
        task = by_id.get(task_id)
        if task is None:
            print(f"not_found task_id={task_id}")
            continue
        reason = await _skip_reason(session_factory, task)
        if reason is not None:
            print(f"skipped task_id={task_id} reason={reason!r}")
            continue
        if await queue.replay_dead_letter(task_id):
            replayed += 1
        else:
            print(f"not_found task_id={task_id}")
    print(f"replayed={replayed}")
    return replayed


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    asyncio.run(replay(get_task_queue(), args.task_ids, replay_all=args.all, limit=args.limit))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
