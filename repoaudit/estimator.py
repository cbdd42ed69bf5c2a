"""Token and cost estimation for audit tiers."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from .errors import ValidationError
from .logging import get_logger
from .models import ComplexityFingerprint, FileEntry

_LOGGER = get_logger("estimator")

CHARS_PER_TOKEN = 4
BYTES_PER_TOKEN = 4

TIER_ALIASES: Dict[str, str] = {
    "lite": "shape",
    "deep": "conventions",
    "ultra": "security",
}

BASE_FEE_CENTS = 5
DOLLARS_PER_MILLION_TOKENS = 15.0
DEVIATION_THRESHOLD = 0.5

_FRONTEND_PATTERN = re.compile(r"\.(tsx?|jsx?|vue|svelte)$")
_BACKEND_SUFFIX = re.compile(r"\.(ts|js|py|go|rb|java)$")
_BACKEND_PATH = re.compile(r"(server|api|function|handler)")
_TEST_PATTERN = re.compile(r"(\.(test|spec)\.(ts|js|tsx|jsx)$)|((^|/)test_[^/]+\.py$)|(_test\.(py|go)$)")
_CONFIG_SUFFIX = re.compile(r"\.(json|ya?ml|toml|env)$")
_SQL_PATTERN = re.compile(r"\.sql$")
_ENDPOINT_PATTERN = re.compile(r"(api|route|endpoint|handler)")
_FRAMEWORK_MARKERS = ("supabase", "prisma", "drizzle")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_tokens_from_text(content: str) -> int:
    """Approximate token count of a decoded file body."""
    return math.ceil(len(content) / CHARS_PER_TOKEN)


def estimate_tokens_from_bytes(byte_size: int) -> int:
    """Approximate token count from a byte size (UTF-8, ~4 bytes per token)."""
    return round_half_up(max(byte_size, 0) / BYTES_PER_TOKEN)


@dataclass(frozen=True)
class TierFormula:
    """Linear cost model for one tier with a floor and an overrun ceiling."""

    tier: str
    base_tokens: int
    max_overrun: float
    formula: Callable[[ComplexityFingerprint], float]


def _shape(fp: ComplexityFingerprint) -> float:
    return 5000 + fp.file_count * 50 + fp.config_files * 200


def _conventions(fp: ComplexityFingerprint) -> float:
    return 20000 + fp.token_estimate * 0.05 + fp.test_files * 500


def _performance(fp: ComplexityFingerprint) -> float:
    return 30000 + fp.frontend_files * 800 + fp.backend_files * 600


def _security(fp: ComplexityFingerprint) -> float:
    supabase_bonus = 10000 if fp.framework_flags.get("supabase") else 0
    return 50000 + fp.sql_files * 3000 + supabase_bonus + fp.api_endpoints_estimated * 1000


def _supabase_deep_dive(fp: ComplexityFingerprint) -> float:
    return 60000 + fp.sql_files * 4000 + fp.backend_files * 1000 + fp.api_endpoints_estimated * 1500


COST_FORMULAS: Dict[str, TierFormula] = {
    formula.tier: formula
    for formula in (
        TierFormula("shape", 5000, 1.1, _shape),
        TierFormula("conventions", 20000, 1.15, _conventions),
        TierFormula("performance", 30000, 1.15, _performance),
        TierFormula("security", 50000, 1.2, _security),
        TierFormula("supabase_deep_dive", 60000, 1.2, _supabase_deep_dive),
    )
}

VALID_TIERS: Tuple[str, ...] = tuple(COST_FORMULAS)


def resolve_tier(name: str) -> str:
    """Map a caller-facing tier name (including aliases) onto a canonical tier."""
    normalized = (name or "").strip().lower()
    canonical = TIER_ALIASES.get(normalized, normalized)
    if canonical not in COST_FORMULAS:
        raise ValidationError(
            f"Unknown audit tier '{name}'. Expected one of: {', '.join(VALID_TIERS)}"
        )
    return canonical


def estimate_tokens(tier: str, fingerprint: ComplexityFingerprint) -> int:
    """Estimated token cost for ``tier``, never below the tier's base tokens."""
    formula = COST_FORMULAS[resolve_tier(tier)]
    return max(formula.base_tokens, round_half_up(formula.formula(fingerprint)))


def max_tokens(tier: str, fingerprint: ComplexityFingerprint) -> int:
    """Ceiling for ``tier``: the estimate scaled by the tier overrun multiplier."""
    formula = COST_FORMULAS[resolve_tier(tier)]
    return round_half_up(estimate_tokens(tier, fingerprint) * formula.max_overrun)


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)


@dataclass
class TierEstimate:
    tier: str
    estimated_tokens: int
    max_tokens: int
    formatted: str


def estimate_all_tiers(fingerprint: ComplexityFingerprint) -> Dict[str, TierEstimate]:
    estimates: Dict[str, TierEstimate] = {}
    for tier in VALID_TIERS:
        estimated = estimate_tokens(tier, fingerprint)
        estimates[tier] = TierEstimate(
            tier=tier,
            estimated_tokens=estimated,
            max_tokens=max_tokens(tier, fingerprint),
            formatted=format_tokens(estimated),
        )
    return estimates


def build_fingerprint(files: Iterable[FileEntry]) -> ComplexityFingerprint:
    """Derive the complexity fingerprint of a manifest from its paths and sizes."""
    entries = list(files)
    paths = [entry.path for entry in entries]
    lowered = [path.lower() for path in paths]
    return ComplexityFingerprint(
        file_count=len(entries),
        total_bytes=sum(max(entry.byte_size, 0) for entry in entries),
        token_estimate=sum(estimate_tokens_from_bytes(entry.byte_size) for entry in entries),
        frontend_files=sum(1 for path in lowered if _FRONTEND_PATTERN.search(path)),
        backend_files=sum(
            1 for path in lowered if _BACKEND_SUFFIX.search(path) and _BACKEND_PATH.search(path)
        ),
        test_files=sum(1 for path in lowered if _TEST_PATTERN.search(path)),
        config_files=sum(
            1 for path in lowered if _CONFIG_SUFFIX.search(path) or "config" in path
        ),
        sql_files=sum(1 for path in lowered if _SQL_PATTERN.search(path)),
        framework_flags={
            marker: any(marker in path for path in lowered) for marker in _FRAMEWORK_MARKERS
        },
        api_endpoints_estimated=sum(1 for path in lowered if _ENDPOINT_PATTERN.search(path)),
    )


@dataclass
class PriceQuote:
    estimated_tokens: int
    total_cents: int
    base_fee_cents: int
    usage_cents: int
    currency: str = "USD"

    @property
    def formatted(self) -> str:
        return f"${self.total_cents / 100:.2f}"


def quote_price(estimated_tokens: int) -> PriceQuote:
    """Quote the price of an audit before it runs."""
    cents_per_token = DOLLARS_PER_MILLION_TOKENS * 100 / 1_000_000
    usage_cents = math.ceil(estimated_tokens * cents_per_token)
    return PriceQuote(
        estimated_tokens=estimated_tokens,
        total_cents=BASE_FEE_CENTS + usage_cents,
        base_fee_cents=BASE_FEE_CENTS,
        usage_cents=usage_cents,
    )


@dataclass
class DeviationCheck:
    declared: int
    computed: int
    ratio: float
    flagged: bool


def check_deviation(
    declared: Optional[int],
    computed: int,
    *,
    threshold: float = DEVIATION_THRESHOLD,
) -> Optional[DeviationCheck]:
    """Compare a caller-declared estimate with the server-side one.

    A deviation above ``threshold`` is flagged and logged but never blocks a run.
    Returns ``None`` when the caller declared nothing.
    """
    if declared is None:
        return None
    if computed <= 0:
        ratio = 0.0 if declared == computed else float("inf")
    else:
        ratio = abs(declared - computed) / computed
    flagged = ratio > threshold
    if flagged:
        _LOGGER.warning(
            "Declared token estimate %d deviates %.0f%% from computed %d",
            declared,
            ratio * 100,
            computed,
        )
    return DeviationCheck(declared=declared, computed=computed, ratio=ratio, flagged=flagged)


def planner_budget(
    tier: str,
    fingerprint: ComplexityFingerprint,
    *,
    max_tokens_per_chunk: int,
    min_tokens_to_merge: int,
) -> int:
    """Per-chunk token budget for the planner, bounded by the tier ceiling."""
    ceiling = max_tokens(tier, fingerprint)
    return min(max_tokens_per_chunk, max(ceiling, min_tokens_to_merge))


__all__ = [
    "COST_FORMULAS",
    "DeviationCheck",
    "PriceQuote",
    "TIER_ALIASES",
    "TierEstimate",
    "TierFormula",
    "VALID_TIERS",
    "build_fingerprint",
    "check_deviation",
    "estimate_all_tiers",
    "estimate_tokens",
    "estimate_tokens_from_bytes",
    "estimate_tokens_from_text",
    "format_tokens",
    "max_tokens",
    "planner_budget",
    "quote_price",
    "resolve_tier",
    "round_half_up",
]
