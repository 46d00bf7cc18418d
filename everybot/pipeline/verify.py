"""Verification sweep: is the listing still live on its portal?"""

from datetime import datetime, timedelta

from loguru import logger

from everybot.adapters import ADAPTERS
from everybot.errors import ConfigError, FetchError
from everybot.logging import stage_finished, stage_started
from everybot.models import SourceStatus
from everybot.pipeline.state import BatchResult, PipelineContext

STAGE = "verify"

# Phrases any portal uses for an expired offer
EXPIRED_PHRASES = (
    "ogłoszenie nieaktualne",
    "ogloszenie nieaktualne",
    "oferta nieaktualna",
)


def status_from_response(status: int, body: str | None, source: str | None = None) -> SourceStatus:
    """
    Map a fetched offer page to a source status.

    404/410 is ``removed``, any other non-2xx is ``unknown``, a body with
    an expired phrase (generic or the portal's own) is ``inactive``;
    anything else is ``active``.
    """
    if status in (404, 410):
        return SourceStatus.REMOVED
    if not 200 <= status < 300:
        return SourceStatus.UNKNOWN

    text = (body or "").lower()
    phrases = EXPIRED_PHRASES
    adapter = ADAPTERS.get(source or "")
    if adapter is not None:
        phrases = phrases + adapter.expired_phrases
    if any(phrase in text for phrase in phrases):
        return SourceStatus.INACTIVE

    return SourceStatus.ACTIVE


async def run_verify_round(
    ctx: PipelineContext,
    office_id: str,
    limit: int | None = None,
    *,
    listing_id: str | None = None,
    checked_before: datetime | None = None,
) -> BatchResult:
    """
    Re-check the least recently checked rows of one office.

    Holds the office's ``verify`` lock (skips when taken). Every selected
    row gets ``last_checked_at`` bumped, even when the fetch fails, so the
    next sweep moves on to other rows.
    """
    limit = ctx.settings.verify_limit if limit is None else limit
    if checked_before is None and listing_id is None:
        checked_before = datetime.now() - timedelta(hours=ctx.settings.verify_interval_hours)

    result = BatchResult(stage=STAGE, details={"statuses": {}})

    async with ctx.locks.held(office_id, STAGE) as handle:
        if handle is None:
            logger.info("Verification for {} already running, skipping", office_id)
            result.details["locked"] = True
            return result

        rows = ctx.store.select_stale_for_verification(
            office_id,
            limit,
            checked_before=checked_before,
            listing_id=listing_id,
        )
        stage_started(STAGE, office_id, selected=len(rows))

        for row in rows:
            if row.source not in ADAPTERS:
                ctx.store.save_verification(office_id, row.id, None)
                result.skipped += 1
                continue

            await ctx.pace(f"{STAGE}:{row.source}", ctx.settings.verify_delay)
            try:
                fetched = await ctx.fetcher.fetch(row.source_url)
                status = status_from_response(fetched.status, fetched.body, row.source)
                final_url = fetched.final_url if fetched.redirected and status != SourceStatus.REMOVED else None
                ctx.store.save_verification(office_id, row.id, status, final_url)
            except ConfigError:
                raise
            except FetchError as e:
                logger.warning("Verify failed for {} {} {}: {}", row.source, row.id, row.source_url, e)
                result.add_error(e, item_id=row.id, source=row.source, url=row.source_url)
                ctx.store.save_verification(office_id, row.id, None)
                continue
            except Exception as e:
                logger.opt(exception=e).warning("Verify failed for {} {} {}", row.source, row.id, row.source_url)
                result.add_error(e, item_id=row.id, source=row.source, url=row.source_url)
                continue

            result.processed += 1
            counts = result.details["statuses"]
            counts[status.value] = counts.get(status.value, 0) + 1

    stage_finished(STAGE, office_id, {"processed": result.processed, "errors": len(result.errors)})
    return result
