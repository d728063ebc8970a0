"""
Gemini Proxy - Usage Module

Usage accounting for proxied Gemini calls:
- Pricing: per-model cost table
- Estimator: pre-request token estimate
- Extractor: post-response token usage
- Limits: quota guard and per-IP fallback limiter
- Tracker: background usage recorder
"""

from .pricing import (
    DEFAULT_PRICING_MODEL,
    PricingEntry,
    PricingTable,
    get_pricing_table,
    calculate_cost,
    round_cost,
)
from .estimator import (
    TokenEstimate,
    TokenEstimator,
    estimate_tokens,
)
from .extractor import (
    extract_usage,
    extract_stream_usage,
    extract_embedding_usage,
    parse_stream_body,
)
from .limits import (
    LimitDimension,
    LimitCheckResult,
    QuotaGuard,
    ClientRateDecision,
    ClientRateLimiter,
)
from .tracker import (
    DeadLetter,
    UsageRecorder,
    build_usage_record,
)

__all__ = [
    # Pricing
    "DEFAULT_PRICING_MODEL",
    "PricingEntry",
    "PricingTable",
    "get_pricing_table",
    "calculate_cost",
    "round_cost",
    # Estimator
    "TokenEstimate",
    "TokenEstimator",
    "estimate_tokens",
    # Extractor
    "extract_usage",
    "extract_stream_usage",
    "extract_embedding_usage",
    "parse_stream_body",
    # Limits
    "LimitDimension",
    "LimitCheckResult",
    "QuotaGuard",
    "ClientRateDecision",
    "ClientRateLimiter",
    # Tracker
    "DeadLetter",
    "UsageRecorder",
    "build_usage_record",
]
