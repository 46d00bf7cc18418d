"""Harvest: search pages -> candidate rows."""

from datetime import datetime

from loguru import logger

from everybot.adapters import SourceAdapter, get_adapter
from everybot.config import Settings
from everybot.errors import BlockedError, ConfigError, FetchError
from everybot.filters import normalize_filters
from everybot.logging import harvest_log, stage_finished, stage_started
from everybot.models import SearchFilters
from everybot.pipeline.state import BatchResult, PipelineContext
from everybot.utils import random_delay

STAGE = "harvest"


def resolve_sources(source: str | None, settings: Settings) -> list[SourceAdapter]:
    """
    Adapters for a ``source`` value: ``all``, one key, or a comma list.

    Raises:
        ConfigError: a key has no adapter
    """
    raw = (source or "all").strip().lower()
    keys = settings.harvest_sources if raw in ("", "all") else [k.strip() for k in raw.split(",") if k.strip()]
    return [get_adapter(key) for key in keys]


async def harvest_source(
    ctx: PipelineContext,
    office_id: str,
    adapter: SourceAdapter,
    filters: SearchFilters,
    result: BatchResult,
    *,
    pages: int,
    limit: int,
    matched_at: datetime,
) -> int:
    """
    Walk one source's search pages in order and upsert what they yield.

    Pagination stops at the page budget, the item budget, a page without a
    next link, an empty page, or a degraded page. Rows stored from earlier
    pages are kept in every case.

    Returns:
        Number of rows upserted
    """
    stored = 0

    for page in range(1, pages + 1):
        if page > 1:
            await random_delay(ctx.settings.default_delay_min, ctx.settings.default_delay_max)

        url = adapter.build_search_url(filters, page)
        try:
            fetched = await ctx.fetcher.fetch(url)
        except BlockedError as e:
            logger.warning("{} blocked on page {} ({}), skipping source", adapter.name, page, e)
            result.add_error(e, source=adapter.name, url=url)
            result.details.setdefault("blocked", []).append(adapter.name)
            break
        except FetchError as e:
            logger.warning("{} fetch failed on page {}: {}", adapter.name, page, e)
            result.add_error(e, source=adapter.name, url=url)
            break

        if not fetched.ok:
            logger.warning("{} answered HTTP {} for {}", adapter.name, fetched.status, url)
            result.add_error(f"HTTP {fetched.status}", source=adapter.name, url=url)
            break

        search = adapter.parse_search_results(
            fetched.body,
            fetched.final_url,
            filters=filters,
            page=page,
            requested_url=url,
        )
        harvest_log(
            adapter.name,
            page,
            url,
            len(search.items),
            final_url=fetched.final_url if fetched.redirected else None,
            discarded=search.discarded or None,
        )

        if search.degraded:
            logger.warning(
                "{} search degraded on page {} ({}): {} -> {}",
                adapter.name,
                page,
                search.degraded_reason.value,
                url,
                search.final_url,
            )
            result.details.setdefault("degraded", []).append(
                {
                    "source": adapter.name,
                    "page": page,
                    "reason": search.degraded_reason.value,
                    "requested_url": search.requested_url,
                    "final_url": search.final_url,
                }
            )
            break

        if not search.items:
            logger.info("{} page {} yielded no candidates", adapter.name, page)
            break

        for item in search.items:
            if stored >= limit:
                break
            try:
                ctx.store.upsert_listing(office_id, item, matched_at=matched_at)
                stored += 1
            except Exception as e:
                logger.warning("Upsert failed for {} {}: {}", adapter.name, item.source_url, e)
                result.add_error(e, source=adapter.name, url=item.source_url)

        if stored >= limit or not search.has_next:
            break

    return stored


async def run_harvest(
    ctx: PipelineContext,
    office_id: str,
    filters: SearchFilters | dict | None = None,
    *,
    pages: int | None = None,
    limit: int | None = None,
    matched_at: datetime | None = None,
) -> BatchResult:
    """
    Harvest every requested source for one office.

    Sources run in order; a failing source is recorded and the next one
    still runs. An unknown source key fails the whole call before any
    request is made.
    """
    filters = normalize_filters(filters)
    adapters = resolve_sources(filters.source, ctx.settings)
    pages = ctx.settings.harvest_pages if pages is None else pages
    limit = ctx.settings.harvest_limit if limit is None else limit
    matched_at = matched_at or datetime.now()

    result = BatchResult(stage=STAGE, details={"per_source": {}})
    stage_started(STAGE, office_id, sources=",".join(a.name for a in adapters))

    for adapter in adapters:
        try:
            stored = await harvest_source(
                ctx,
                office_id,
                adapter,
                filters,
                result,
                pages=pages,
                limit=limit,
                matched_at=matched_at,
            )
        except ConfigError:
            raise
        except Exception as e:
            logger.opt(exception=e).warning("Source {} failed", adapter.name)
            result.add_error(e, source=adapter.name)
            stored = 0

        result.details["per_source"][adapter.name] = stored
        result.processed += stored

    stage_finished(STAGE, office_id, {"processed": result.processed, "errors": len(result.errors)})
    return result
