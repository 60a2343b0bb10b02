"""Compiles a finished task's sub-task outcomes into metrics and reports."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import jinja2
from pydantic import BaseModel

from agentcrew.enhanced_logging import track_performance
from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import TaskNotFoundError
from agentcrew.interfaces.event_bus import AggregationEvent, AggregationEventType
from agentcrew.interfaces.worker import ChatMessage, IWorker
from agentcrew.orchestration.models import SubTask, Task, TaskStatus
from agentcrew.orchestration.task_store import TaskStore
from agentcrew.workers.pool import WorkerPool

if TYPE_CHECKING:
    from agentcrew.config.settings import Settings

logger = logging.getLogger(__name__)


class AggregateStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ExportFormat(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    JSON = "json"


class AggregationMetrics(BaseModel):
    total_subtasks: int
    completed_subtasks: int
    failed_subtasks: int
    success_rate: int
    total_duration_ms: int
    average_subtask_duration_ms: int


class SubTaskOutcome(BaseModel):
    subtask_id: str
    title: str
    status: TaskStatus
    worker_id: Optional[str] = None
    worker_name: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class ExportData(BaseModel):
    markdown: str
    html: str
    json_: str = ""


class AggregatedResult(BaseModel):
    task_id: str
    original_task: str
    status: AggregateStatus
    completed_at: Optional[int] = None
    summary: str
    report: str
    subtask_results: List[SubTaskOutcome]
    metrics: AggregationMetrics
    export_data: Optional[ExportData] = None


@dataclass
class AggregatorConfig:
    include_metrics: bool = True
    include_agent_details: bool = True
    include_timestamps: bool = True

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AggregatorConfig":
        return cls(
            include_metrics=settings.include_metrics,
            include_agent_details=settings.include_agent_details,
            include_timestamps=settings.include_timestamps,
        )


_CONCLUSIONS = (
    (100, "All sub-tasks completed successfully. The task has been fully delivered."),
    (80, "Most sub-tasks completed successfully. Review the failed items before relying on the result."),
    (50, "The task was partially completed. A significant share of sub-tasks needs attention."),
    (0, "The task largely failed. Most sub-tasks did not complete and require intervention."),
)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Task Report: {{ result.original_task }}</title>
<style>
body { font-family: sans-serif; max-width: 900px; margin: 2em auto; color: #222; }
table { border-collapse: collapse; }
td, th { border: 1px solid #ccc; padding: 4px 10px; text-align: left; }
.completed { color: #1a7f37; } .failed { color: #cf222e; } .pending, .running { color: #9a6700; }
pre { white-space: pre-wrap; background: #f6f8fa; padding: 8px; }
</style>
</head>
<body>
<h1>Task Report</h1>
<p><strong>Task:</strong> {{ result.original_task }}</p>
<p><strong>Status:</strong> <span class="{{ result.status.value }}">{{ result.status.value }}</span></p>
{% if generated_at %}<p><strong>Generated:</strong> {{ generated_at }}</p>{% endif %}
<h2>Summary</h2>
<p>{{ result.summary }}</p>
{% if config.include_metrics %}
<h2>Metrics</h2>
<table>
<tr><th>Metric</th><th>Value</th></tr>
<tr><td>Total sub-tasks</td><td>{{ result.metrics.total_subtasks }}</td></tr>
<tr><td>Completed</td><td>{{ result.metrics.completed_subtasks }}</td></tr>
<tr><td>Failed</td><td>{{ result.metrics.failed_subtasks }}</td></tr>
<tr><td>Success rate</td><td>{{ result.metrics.success_rate }}%</td></tr>
<tr><td>Total duration</td><td>{{ result.metrics.total_duration_ms }} ms</td></tr>
<tr><td>Average duration</td><td>{{ result.metrics.average_subtask_duration_ms }} ms</td></tr>
</table>
{% endif %}
<h2>Sub-tasks</h2>
{% for item in result.subtask_results %}
<h3>{{ loop.index }}. {{ item.title }} <span class="{{ item.status.value }}">({{ item.status.value }})</span></h3>
{% if config.include_agent_details and item.worker_name %}<p>Worker: {{ item.worker_name }}</p>{% endif %}
{% if item.duration_ms is not none %}<p>Duration: {{ item.duration_ms }} ms</p>{% endif %}
{% if item.status.value == "completed" %}<pre>{{ item.result or "" }}</pre>{% elif item.error %}<pre>Error: {{ item.error }}</pre>{% endif %}
{% endfor %}
<h2>Conclusion</h2>
<p>{{ conclusion }}</p>
</body>
</html>
"""


def conclusion_for(success_rate: int) -> str:
    for floor, text in _CONCLUSIONS:
        if success_rate >= floor:
            return text
    return _CONCLUSIONS[-1][1]


def _format_ts(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class ResultAggregator:
    """Builds and caches an ``AggregatedResult`` per task."""

    def __init__(
        self,
        store: TaskStore,
        pool: WorkerPool,
        event_bus: Optional[QueueEventBus] = None,
        summarizer: Optional[IWorker] = None,
        config: Optional[AggregatorConfig] = None,
    ) -> None:
        self._store = store
        self._pool = pool
        self._bus = event_bus
        self._summarizer = summarizer
        self.config = config or AggregatorConfig()
        self._results: Dict[str, AggregatedResult] = {}
        self._summaries: Dict[str, Tuple[Tuple, str]] = {}
        env = jinja2.Environment(loader=jinja2.BaseLoader(), autoescape=True)
        self._html_template = env.from_string(_HTML_TEMPLATE)

    @track_performance(operation="aggregate")
    async def aggregate(self, task_id: str) -> AggregatedResult:
        """(Re)build the result for *task_id* and cache it."""
        self._emit(AggregationEventType.AGGREGATION_STARTED, task_id)
        task = self._store.get_task(task_id)
        if task is None:
            self._emit(AggregationEventType.AGGREGATION_FAILED, task_id, error="Task not found")
            raise TaskNotFoundError(f"Task {task_id!r} not found", details={"task_id": task_id})

        subtasks = self._store.subtasks(task_id)
        outcomes = [self._outcome(sub) for sub in subtasks]
        metrics = self.compute_metrics(subtasks)
        status = self.classify(subtasks)
        summary = await self._summary(task, outcomes, metrics, status)
        task.summary = summary

        result = AggregatedResult(
            task_id=task.id,
            original_task=task.original_task,
            status=status,
            completed_at=task.completed_at,
            summary=summary,
            report="",
            subtask_results=outcomes,
            metrics=metrics,
        )
        generated_at = self._generated_at(task, subtasks)
        markdown = self.render_markdown(result, generated_at)
        result.report = markdown
        result.export_data = ExportData(
            markdown=markdown,
            html=self.render_html(result, generated_at),
            json_=result.model_dump_json(indent=2, exclude={"export_data"}),
        )

        self._results[task_id] = result
        logger.info("Aggregated task %s: %s (%d%%)", task_id, status.value, metrics.success_rate)
        self._emit(AggregationEventType.AGGREGATION_COMPLETED, task_id, status=status.value)
        return result

    # ── Metrics ──────────────────────────────────────────────────────

    @staticmethod
    def compute_metrics(subtasks: List[SubTask]) -> AggregationMetrics:
        total = len(subtasks)
        completed = sum(1 for s in subtasks if s.status == TaskStatus.COMPLETED)
        failed = sum(1 for s in subtasks if s.status == TaskStatus.FAILED)
        durations = [s.duration_ms for s in subtasks if s.duration_ms is not None]
        total_duration = sum(durations)
        return AggregationMetrics(
            total_subtasks=total,
            completed_subtasks=completed,
            failed_subtasks=failed,
            success_rate=round(completed / total * 100) if total else 0,
            total_duration_ms=total_duration,
            average_subtask_duration_ms=round(total_duration / len(durations)) if durations else 0,
        )

    @staticmethod
    def classify(subtasks: List[SubTask]) -> AggregateStatus:
        if subtasks and all(s.status == TaskStatus.COMPLETED for s in subtasks):
            return AggregateStatus.COMPLETED
        if subtasks and all(s.status == TaskStatus.FAILED for s in subtasks):
            return AggregateStatus.FAILED
        return AggregateStatus.PARTIAL

    def _outcome(self, sub: SubTask) -> SubTaskOutcome:
        worker = self._pool.get(sub.assigned_worker_id) if sub.assigned_worker_id else None
        return SubTaskOutcome(
            subtask_id=sub.id,
            title=sub.title,
            status=sub.status,
            worker_id=sub.assigned_worker_id,
            worker_name=worker.name if worker else None,
            result=sub.result,
            error=sub.error,
            duration_ms=sub.duration_ms,
        )

    @staticmethod
    def _generated_at(task: Task, subtasks: List[SubTask]) -> int:
        if task.completed_at is not None:
            return task.completed_at
        ends = [s.end_time for s in subtasks if s.end_time is not None]
        return max(ends) if ends else task.created_at

    # ── Summary ──────────────────────────────────────────────────────

    async def _summary(
        self,
        task: Task,
        outcomes: List[SubTaskOutcome],
        metrics: AggregationMetrics,
        status: AggregateStatus,
    ) -> str:
        fingerprint = tuple((o.subtask_id, o.status.value, o.result, o.error) for o in outcomes)
        cached = self._summaries.get(task.id)
        if cached is not None and cached[0] == fingerprint:
            return cached[1]

        summary = self._fallback_summary(task, metrics, status)
        if self._summarizer is not None:
            digest = "\n".join(
                f"- {o.title} [{o.status.value}]: {(o.result or o.error or '')[:300]}"
                for o in outcomes
            )
            try:
                text = await self._summarizer.chat([
                    ChatMessage("system", "You summarize multi-agent task results in two or three sentences."),
                    ChatMessage("user", f"Task: {task.original_task}\n\nSub-task results:\n{digest}"),
                ])
            except Exception as exc:
                logger.warning("Summary generation failed for %s: %s", task.id, exc)
            else:
                if text and text.strip():
                    summary = text.strip()

        self._summaries[task.id] = (fingerprint, summary)
        return summary

    @staticmethod
    def _fallback_summary(task: Task, metrics: AggregationMetrics, status: AggregateStatus) -> str:
        return (
            f"Task \"{task.original_task}\" finished with status {status.value}: "
            f"{metrics.completed_subtasks} of {metrics.total_subtasks} sub-tasks completed "
            f"({metrics.success_rate}% success rate)."
        )

    # ── Rendering ────────────────────────────────────────────────────

    def render_markdown(self, result: AggregatedResult, generated_at: Optional[int] = None) -> str:
        lines = [f"# Task Report: {result.original_task}", ""]
        lines.append(f"- **Task ID**: {result.task_id}")
        lines.append(f"- **Status**: {result.status.value}")
        if self.config.include_timestamps:
            if result.completed_at is not None:
                lines.append(f"- **Completed**: {_format_ts(result.completed_at)}")
            if generated_at is not None:
                lines.append(f"- **Generated**: {_format_ts(generated_at)}")
        lines += ["", "## Summary", "", result.summary, ""]

        if self.config.include_metrics:
            m = result.metrics
            lines += [
                "## Metrics",
                "",
                "| Metric | Value |",
                "| --- | --- |",
                f"| Total sub-tasks | {m.total_subtasks} |",
                f"| Completed | {m.completed_subtasks} |",
                f"| Failed | {m.failed_subtasks} |",
                f"| Success rate | {m.success_rate}% |",
                f"| Total duration | {m.total_duration_ms} ms |",
                f"| Average duration | {m.average_subtask_duration_ms} ms |",
                "",
            ]

        lines += ["## Sub-task Details", ""]
        for index, item in enumerate(result.subtask_results, start=1):
            lines.append(f"### {index}. {item.title} ({item.status.value})")
            lines.append("")
            if self.config.include_agent_details and item.worker_name:
                lines.append(f"- Worker: {item.worker_name}")
            if item.duration_ms is not None:
                lines.append(f"- Duration: {item.duration_ms} ms")
            lines.append("")
            if item.status == TaskStatus.COMPLETED:
                lines += [item.result or "", ""]
            elif item.error:
                lines += [f"**Error**: {item.error}", ""]

        lines += ["## Conclusion", "", conclusion_for(result.metrics.success_rate), ""]
        return "\n".join(lines)

    def render_html(self, result: AggregatedResult, generated_at: Optional[int] = None) -> str:
        return self._html_template.render(
            result=result,
            config=self.config,
            conclusion=conclusion_for(result.metrics.success_rate),
            generated_at=_format_ts(generated_at) if self.config.include_timestamps else None,
        )

    # ── Cache ────────────────────────────────────────────────────────

    def get_result(self, task_id: str) -> Optional[AggregatedResult]:
        return self._results.get(task_id)

    def all_results(self) -> List[AggregatedResult]:
        return list(self._results.values())

    def export_report(self, task_id: str, format: ExportFormat = ExportFormat.MARKDOWN) -> Optional[str]:
        """Cached export, or None if the task has not been aggregated."""
        result = self._results.get(task_id)
        if result is None or result.export_data is None:
            return None
        fmt = ExportFormat(format)
        if fmt == ExportFormat.HTML:
            return result.export_data.html
        if fmt == ExportFormat.JSON:
            return result.export_data.json_
        return result.export_data.markdown

    def clear_result(self, task_id: str) -> bool:
        self._summaries.pop(task_id, None)
        return self._results.pop(task_id, None) is not None

    def _emit(
        self,
        event_type: AggregationEventType,
        task_id: str,
        status: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if self._bus is not None:
            self._bus.publish(AggregationEvent(type=event_type, task_id=task_id, status=status, error=error))
