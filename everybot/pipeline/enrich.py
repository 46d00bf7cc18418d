"""Enrichment sweep: detail pages -> structured attributes."""

from datetime import datetime, timedelta

from loguru import logger

from everybot.adapters import ADAPTERS
from everybot.errors import ConfigError
from everybot.logging import stage_finished, stage_started
from everybot.pipeline.state import BatchResult, PipelineContext

STAGE = "enrich"


async def run_enrich_round(
    ctx: PipelineContext,
    office_id: str,
    limit: int | None = None,
    *,
    listing_id: str | None = None,
    enriched_before: datetime | None = None,
) -> BatchResult:
    """
    Enrich the stalest rows of one office.

    The sweep holds the office's ``enrich`` lock; when another sweep holds
    it, nothing is done and ``processed`` is 0 with no error. A failing row
    is marked ``error`` and the sweep moves on.
    """
    limit = ctx.settings.enrich_limit if limit is None else limit
    if enriched_before is None:
        enriched_before = datetime.now() - timedelta(hours=ctx.settings.enrich_retry_hours)

    result = BatchResult(stage=STAGE)

    async with ctx.locks.held(office_id, STAGE) as handle:
        if handle is None:
            logger.info("Enrichment for {} already running, skipping", office_id)
            result.details["locked"] = True
            return result

        rows = ctx.store.select_stale_for_enrichment(
            office_id,
            limit,
            enriched_before=enriched_before,
            listing_id=listing_id,
        )
        stage_started(STAGE, office_id, selected=len(rows))

        for row in rows:
            adapter = ADAPTERS.get(row.source)
            if adapter is None:
                result.add_error("Unsupported source", item_id=row.id, source=row.source, url=row.source_url)
                ctx.store.mark_enrich_error(office_id, row.id, "Unsupported source")
                continue

            await ctx.pace(f"{STAGE}:{row.source}", ctx.settings.enrich_delay)
            try:
                data = await adapter.enrich(ctx.fetcher, row.source_url)
                ctx.store.apply_enrichment(office_id, row.id, data)
                result.processed += 1
            except ConfigError:
                raise
            except Exception as e:
                logger.warning("Enrich failed for {} {} {}: {}", row.source, row.id, row.source_url, e)
                error = result.add_error(e, item_id=row.id, source=row.source, url=row.source_url)
                ctx.store.mark_enrich_error(office_id, row.id, error.error)

    stage_finished(STAGE, office_id, {"processed": result.processed, "errors": len(result.errors)})
    return result
