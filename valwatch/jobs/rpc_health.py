"""RPC endpoint health checker."""

from __future__ import annotations

import logging

from valwatch.jobs.base import JobContext, add_recurring_job, notify_subscribers
from valwatch.models import NotificationEvent
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "rpcEndpointHealthchecker"


async def handle(ctx: JobContext, job: Job) -> dict[str, bool]:
    """Probe every configured endpoint and notify on health changes.

    An endpoint seen for the first time is only reported when it is down.
    """
    results: dict[str, bool] = {}
    for endpoint in ctx.settings.rpc_endpoints:
        healthy = await ctx.chain.check_rpc_endpoint(endpoint.url)
        previous = await ctx.db.get_rpc_endpoint(endpoint.name)
        await ctx.db.set_rpc_endpoint_health(endpoint.name, endpoint.url, healthy)
        results[endpoint.name] = healthy

        was_healthy = None if previous is None or previous["is_healthy"] is None else bool(previous["is_healthy"])
        changed = (not healthy) if was_healthy is None else was_healthy != healthy
        if not changed:
            continue

        logger.warning(f"RPC endpoint {endpoint.name} is now {'healthy' if healthy else 'unreachable'}")
        await notify_subscribers(
            ctx.db,
            NotificationEvent.RPC_ENDPOINT_HEALTH,
            {"name": endpoint.name, "url": endpoint.url, "is_healthy": healthy},
            condition=f"rpc_endpoint_health:{endpoint.name}:{'up' if healthy else 'down'}",
        )
    return results


async def add_rpc_endpoint_healthchecker_job(ctx: JobContext) -> str:
    return await add_recurring_job(ctx, QUEUE_NAME, ctx.settings.rpc_health_check_interval)
