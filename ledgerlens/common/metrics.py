"""
Prometheus metrics for the categorization pipeline
"""
from prometheus_client import Counter, Histogram

CATEGORIZATIONS = Counter(
    "ledgerlens_categorizations_total",
    "Categorized transactions by decision source",
    ["source", "needs_review"],
)

PASS2_INVOCATIONS = Counter(
    "ledgerlens_pass2_invocations_total",
    "Generative fallback invocations by outcome",
    ["outcome"],
)

GUARDRAIL_APPLICATIONS = Counter(
    "ledgerlens_guardrail_applications_total",
    "Guardrail redirects and rejections by tag",
    ["tag"],
)

SIGNAL_SOURCE_FAILURES = Counter(
    "ledgerlens_signal_source_failures_total",
    "Evidence sources that raised and were skipped",
    ["source"],
)

CATEGORIZATION_LATENCY = Histogram(
    "ledgerlens_categorization_seconds",
    "End-to-end categorization latency",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
