"""
Deterministic synthetic usage rows.

Used only when the gateway query fails and fallback mode (offline/preview)
is enabled. Output depends only on the explicit seed inputs, so previews and
tests are reproducible; every result is flagged as fallback data.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from gateway_usage.storage.models import PageCacheEntry, UsageDistribution, UsageRequestEntry
from .identity import dedupe_rows
from .query_key import UsageFilters, build_query_key

FALLBACK_PROVIDERS = ("provider_1", "provider_2", "official")
FALLBACK_MODELS = ("gpt-5.x", "gpt-4.1")
FALLBACK_SESSIONS = ("preview-s1", "preview-s2", "preview-s3", "preview-s4")
FALLBACK_ORIGINS = ("windows", "wsl2")
UNKNOWN_NAME = "unknown"

# Preview rows never spread wider than the daily chart window.
FALLBACK_MAX_WINDOW_HOURS = 24 * 45

INPUT_TOKEN_RANGE = (200, 6000)
OUTPUT_TOKEN_RANGE = (40, 1800)
CACHE_CREATION_RANGE = (0, 256)


class LinearCongruentialGenerator:
    """32-bit LCG with the Numerical Recipes constants."""

    MULTIPLIER = 1664525
    INCREMENT = 1013904223
    MODULUS = 2 ** 32

    def __init__(self, seed: int):
        self.state = seed % self.MODULUS

    def next_uint32(self) -> int:
        self.state = (self.MULTIPLIER * self.state + self.INCREMENT) % self.MODULUS
        return self.state

    def random(self) -> float:
        """Uniform float in [0, 1)."""
        return self.next_uint32() / self.MODULUS

    def randint(self, low: int, high: int) -> int:
        """Uniform integer in [low, high]."""
        if high < low:
            raise ValueError("high must be >= low")
        return low + int(self.random() * (high - low + 1))


def fallback_seed(generated_at_ms: int, count: int) -> int:
    """Combine the generation timestamp and row count into one seed."""
    return (int(generated_at_ms) ^ (int(count) * 2654435761)) & 0xFFFFFFFF


def _sampling_weights(
    observed: Optional[Mapping[str, int]],
    defaults: Sequence[str],
    restrict_to: Optional[Sequence[str]] = None,
) -> List[Tuple[str, int]]:
    weights = [(name, int(w)) for name, w in sorted((observed or {}).items()) if int(w) > 0]
    if not weights or all(name == UNKNOWN_NAME for name, _ in weights):
        weights = [(name, 1) for name in defaults]
    if restrict_to is not None:
        known = dict(weights)
        weights = [(name, known.get(name, 1)) for name in restrict_to]
    return weights


def _weighted_choice(rng: LinearCongruentialGenerator, weights: Sequence[Tuple[str, int]]) -> str:
    total = sum(w for _, w in weights)
    point = rng.random() * total
    for name, weight in weights:
        if point < weight:
            return name
        point -= weight
    return weights[-1][0]


def generate_fallback_rows(
    generated_at_ms: int,
    count: int,
    hours: int,
    distribution: Optional[UsageDistribution] = None,
    providers: Optional[Sequence[str]] = None,
    models: Optional[Sequence[str]] = None,
    from_unix_ms: Optional[int] = None,
    to_unix_ms: Optional[int] = None,
) -> List[UsageRequestEntry]:
    """Generate ``count`` synthetic rows, newest-first.

    Args:
        generated_at_ms: Generation timestamp; also the newest possible row time
        count: Number of rows to draw
        hours: Window the timestamps are spread over
        distribution: Known request distribution to weight providers and models
        providers: Restrict sampling to these providers
        models: Restrict sampling to these models
        from_unix_ms: Optional lower time bound
        to_unix_ms: Optional upper time bound

    Returns:
        Rows sorted by ``unix_ms`` descending
    """
    if count < 0:
        raise ValueError("count cannot be negative")
    if providers is not None and not providers:
        return []
    if models is not None and not models:
        return []

    rng = LinearCongruentialGenerator(fallback_seed(generated_at_ms, count))
    provider_weights = _sampling_weights(
        distribution.provider_requests if distribution else None, FALLBACK_PROVIDERS, providers
    )
    model_weights = _sampling_weights(
        distribution.model_requests if distribution else None, FALLBACK_MODELS, models
    )

    window_ms = min(hours, FALLBACK_MAX_WINDOW_HOURS) * 60 * 60 * 1000
    end_ms = generated_at_ms if to_unix_ms is None else min(generated_at_ms, to_unix_ms)
    start_ms = end_ms - window_ms if from_unix_ms is None else max(end_ms - window_ms, from_unix_ms)
    if start_ms > end_ms:
        return []
    span_ms = end_ms - start_ms

    rows = []
    for index in range(count):
        input_tokens = rng.randint(*INPUT_TOKEN_RANGE)
        output_tokens = rng.randint(*OUTPUT_TOKEN_RANGE)
        rows.append(UsageRequestEntry(
            provider=_weighted_choice(rng, provider_weights),
            api_key_ref="-",
            model=_weighted_choice(rng, model_weights),
            origin=FALLBACK_ORIGINS[index % 2],
            session_id=FALLBACK_SESSIONS[index % len(FALLBACK_SESSIONS)],
            unix_ms=start_ms + int(rng.random() * span_ms),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cache_creation_input_tokens=rng.randint(*CACHE_CREATION_RANGE),
            cache_read_input_tokens=rng.randint(0, input_tokens // 2),
        ))

    rows.sort(key=lambda r: r.unix_ms, reverse=True)
    return dedupe_rows(rows)


def build_fallback_page(
    filters: UsageFilters,
    generated_at_ms: int,
    count: int,
    distribution: Optional[UsageDistribution] = None,
) -> PageCacheEntry:
    """Synthetic page for ``filters``, flagged as fallback data."""
    rows = generate_fallback_rows(
        generated_at_ms=generated_at_ms,
        count=count,
        hours=filters.hours,
        distribution=distribution,
        providers=filters.providers,
        models=filters.models,
        from_unix_ms=filters.from_unix_ms,
        to_unix_ms=filters.to_unix_ms,
    )
    if filters.origins is not None:
        rows = [r for r in rows if r.origin in filters.origins]
    if filters.sessions is not None:
        rows = [r for r in rows if r.session_id in filters.sessions]
    return PageCacheEntry(
        query_key=build_query_key(filters),
        rows=tuple(rows),
        has_more=False,
        using_fallback=True,
    )


def distribution_from_rows(rows: Sequence[UsageRequestEntry]) -> UsageDistribution:
    """Request counts per provider and model over ``rows``."""
    provider_requests: Dict[str, int] = {}
    model_requests: Dict[str, int] = {}
    for row in rows:
        provider_requests[row.provider] = provider_requests.get(row.provider, 0) + 1
        model_requests[row.model] = model_requests.get(row.model, 0) + 1
    return UsageDistribution(provider_requests=provider_requests, model_requests=model_requests)
