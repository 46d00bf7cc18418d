"""Run orchestration: one tenant through harvest, enrichment and verification."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from loguru import logger
from sqlalchemy.engine import Engine

from everybot.config import Settings, settings as default_settings
from everybot.errors import ConfigError
from everybot.fetch import FetchClient
from everybot.locks import TenantLock
from everybot.logging import stage_finished, stage_started
from everybot.models import SearchFilters
from everybot.models.database import get_engine
from everybot.pipeline.enrich import run_enrich_round
from everybot.pipeline.harvest import run_harvest
from everybot.pipeline.state import BatchResult, PipelineContext
from everybot.pipeline.verify import run_verify_round
from everybot.storage import ListingStore

STAGE = "run"


@dataclass(slots=True)
class CycleResult:
    tenant_id: str
    harvested: int = 0
    enriched: int = 0
    verified: int = 0
    locked: bool = False
    stages: list[BatchResult] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return sum(len(stage.errors) for stage in self.stages)

    def as_summary(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "harvested": self.harvested,
            "enriched": self.enriched,
            "verified": self.verified,
            "locked": self.locked,
            "errors": self.errors,
            "stages": [stage.as_summary() for stage in self.stages],
        }


def open_context(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PipelineContext:
    """Build a fresh context (store, fetch client, locks) for one invocation."""
    settings = settings or default_settings
    store = ListingStore(engine or get_engine(settings.database_url))
    store.init()
    fetcher = FetchClient(
        proxy_url=settings.proxy_url,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_backoff=settings.retry_backoff,
        user_agent=settings.user_agent,
        transport=transport,
    )
    return PipelineContext(
        store,
        fetcher=fetcher,
        locks=TenantLock(store.engine, settings.lock_ttl_minutes),
        settings=settings,
    )


async def _repeat_rounds(run_round, ctx: PipelineContext, tenant_id: str, rounds: int, cycle: CycleResult) -> int:
    """Run sweep rounds while the previous one processed something."""
    total = 0
    for _ in range(max(rounds, 0)):
        try:
            result = await run_round(ctx, tenant_id)
        except ConfigError:
            raise
        except Exception as e:
            logger.opt(exception=e).warning("Sweep round failed for {}", tenant_id)
            failed = BatchResult(stage=getattr(run_round, "__name__", "round"))
            failed.add_error(e)
            cycle.stages.append(failed)
            break
        cycle.stages.append(result)
        total += result.processed
        if result.processed <= 0:
            break
    return total


async def run_full_cycle(
    ctx: PipelineContext,
    tenant_id: str,
    filters: SearchFilters | dict | None = None,
    *,
    matched_at: datetime | None = None,
) -> CycleResult:
    """
    Harvest, then enrichment rounds, then verification rounds for one tenant.

    The whole cycle holds the tenant's ``run`` lock; a second cycle for the
    same tenant returns at once with ``locked`` set. A failing stage is
    logged and the next stage still runs; only a ``ConfigError`` aborts.
    """
    cycle = CycleResult(tenant_id=tenant_id)
    settings = ctx.settings

    async with ctx.locks.held(tenant_id, STAGE) as handle:
        if handle is None:
            logger.info("Run for {} already in progress, skipping", tenant_id)
            cycle.locked = True
            return cycle

        stage_started(STAGE, tenant_id)

        try:
            harvest = await run_harvest(ctx, tenant_id, filters, matched_at=matched_at)
            cycle.stages.append(harvest)
            cycle.harvested = harvest.processed
        except ConfigError:
            raise
        except Exception as e:
            logger.opt(exception=e).warning("Harvest failed for {}", tenant_id)
            failed = BatchResult(stage="harvest")
            failed.add_error(e)
            cycle.stages.append(failed)

        cycle.enriched = await _repeat_rounds(run_enrich_round, ctx, tenant_id, settings.enrich_rounds, cycle)
        cycle.verified = await _repeat_rounds(run_verify_round, ctx, tenant_id, settings.verify_rounds, cycle)

    stage_finished(
        STAGE,
        tenant_id,
        {
            "processed": cycle.harvested + cycle.enriched + cycle.verified,
            "errors": cycle.errors,
            "harvested": cycle.harvested,
            "enriched": cycle.enriched,
            "verified": cycle.verified,
        },
    )
    return cycle


async def run_due_sources(
    ctx: PipelineContext,
    tenant_id: str | None = None,
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Harvest every enabled source definition whose crawl interval elapsed.

    Each source records ``ok`` or ``error:<message>`` as its last status.
    """
    now = now or datetime.now()
    outcomes = []

    for source in ctx.store.select_due_sources(tenant_id, now):
        filters = dict(source.filters or {})
        filters["source"] = source.adapter
        logger.info("Crawling {} ({}) for {}", source.name, source.adapter, source.office_id)
        try:
            result = await run_harvest(ctx, source.office_id, filters, matched_at=now)
        except Exception as e:
            logger.warning("Source {} failed: {}", source.name, e)
            status = f"error:{e}"
            outcomes.append({"source_id": source.id, "name": source.name, "processed": 0, "status": status})
            ctx.store.mark_source_status(source.id, status, now=now)
            continue

        status = f"error:{result.errors[0].error}" if result.errors and not result.processed else "ok"
        ctx.store.mark_source_status(source.id, status, now=now)
        outcomes.append(
            {"source_id": source.id, "name": source.name, "processed": result.processed, "status": status}
        )

    return outcomes
