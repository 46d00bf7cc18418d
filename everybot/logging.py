"""Logging helpers for pipeline stages."""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger


def configure(level: str = "INFO", json: bool = False) -> None:
    """Replace the default sink with one at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=json)


def bind_context(**kwargs: Any):
    """Return a logger with bound contextual fields (stage/tenant/source)."""
    return logger.bind(**{k: v for k, v in kwargs.items() if v is not None})


def stage_started(stage: str, tenant_id: str | None = None, **ctx: Any):
    bind_context(stage=stage, tenant=tenant_id, **ctx).info("stage_start {}", stage)


def stage_finished(stage: str, tenant_id: str | None, summary: dict[str, Any]):
    bind_context(stage=stage, tenant=tenant_id, **summary).info(
        "stage_end {} processed={} errors={}",
        stage,
        summary.get("processed", 0),
        summary.get("errors", 0),
    )


def harvest_log(source: str, page: int, url: str, items_raw: int, items_kept: int | None = None, **ctx: Any):
    payload = {"source": source, "page": page, "url": url, "items_raw": items_raw}
    if items_kept is not None:
        payload["items_kept"] = items_kept
    payload.update({k: v for k, v in ctx.items() if v is not None})
    logger.bind(**payload).info("harvest_page {} p{} raw={}", source, page, items_raw)
