"""Results synchronization pipeline.

Key Components:
- Extractors: Fallback-chain field lookup for events, races, brackets, results
- BracketResolver: Gender and division place lookups from award brackets
- Normalizer: Canonical, de-duplicated results with validation warnings
- CacheStore: Batched upserts into the results cache
- SyncOrchestrator: Cache-or-fetch decision per event, single-flight passes
- LivePollingScheduler: Forced syncs while the selected event is live

Flow:
    load_cached(event) -> hit? serve cache
        ↓ miss / forced / sync version bumped
    fetch_all_results + resolve_rank_lookups
        ↓
    normalize -> upsert -> merge
"""

from race_results_platform.pipeline.brackets import (
    BracketResolver,
    DivisionPlace,
    RankLookups,
    classify_bracket,
)
from race_results_platform.pipeline.live_poller import (
    LivePollingScheduler,
    LiveState,
    is_live,
)
from race_results_platform.pipeline.normalizer import (
    NormalizedResults,
    normalize,
    normalize_with_report,
    unique_divisions,
)
from race_results_platform.pipeline.orchestrator import (
    SyncOrchestrator,
    SyncResult,
    SyncSource,
    SyncState,
)
from race_results_platform.pipeline.storage_adapter import CacheStore

__all__ = [
    "BracketResolver",
    "DivisionPlace",
    "RankLookups",
    "classify_bracket",
    "normalize",
    "normalize_with_report",
    "NormalizedResults",
    "unique_divisions",
    "CacheStore",
    "SyncOrchestrator",
    "SyncResult",
    "SyncSource",
    "SyncState",
    "LivePollingScheduler",
    "LiveState",
    "is_live",
]
