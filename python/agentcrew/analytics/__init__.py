"""Result aggregation and report export."""

from agentcrew.analytics.result_aggregator import (
    AggregatedResult,
    AggregateStatus,
    AggregationMetrics,
    AggregatorConfig,
    ExportData,
    ExportFormat,
    ResultAggregator,
    SubTaskOutcome,
    conclusion_for,
)

__all__ = [
    "AggregatedResult",
    "AggregateStatus",
    "AggregationMetrics",
    "AggregatorConfig",
    "ExportData",
    "ExportFormat",
    "ResultAggregator",
    "SubTaskOutcome",
    "conclusion_for",
]
