"""Pipeline stages."""

from everybot.pipeline.enrich import run_enrich_round
from everybot.pipeline.geocode import run_geocode_batch
from everybot.pipeline.harvest import run_harvest
from everybot.pipeline.rcn import run_rcn_batch
from everybot.pipeline.runner import CycleResult, open_context, run_due_sources, run_full_cycle
from everybot.pipeline.state import BatchResult, ItemError, PipelineContext
from everybot.pipeline.verify import run_verify_round

__all__ = [
    "BatchResult",
    "CycleResult",
    "ItemError",
    "PipelineContext",
    "open_context",
    "run_due_sources",
    "run_enrich_round",
    "run_full_cycle",
    "run_geocode_batch",
    "run_harvest",
    "run_rcn_batch",
    "run_verify_round",
]
