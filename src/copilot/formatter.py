"""
Response formatting.

Assembles funnel metrics and narrative text into the ChatResponse envelope
the presentation layer renders:

  - funnel              one FunnelMetrics, stage by stage
  - comparison          two FunnelMetrics side by side plus rate diffs
  - dimensional_funnel  one FunnelMetrics per breakdown value
  - trend               one FunnelMetrics per period, in period order
  - table               raw rows (deep dives, catalogue lists)

No business logic lives here beyond shape assembly.
"""
from __future__ import annotations

from typing import Any, Mapping, Sequence

from pydantic import BaseModel, Field

from src.copilot.aggregator import FunnelMetrics, compare_funnels
from src.copilot.intent import QueryPlan, VisualizationKind
from src.core.errors import ErrorKind
from src.governance.semantic_loader import load_engagement_model, EngagementModel


class Visualization(BaseModel):
    kind: VisualizationKind
    title: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    """Everything one chat turn returns."""

    question: str
    narrative: str
    insights: list[str] = Field(default_factory=list)
    visualization: Visualization | None = None
    follow_ups: list[str] = Field(default_factory=list)
    deep_dives: list[dict[str, Any]] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    retryable: bool = False
    plan: QueryPlan | None = None
    row_count: int = 0
    latency_ms: float = 0.0
    session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


# ── Visualisation payloads ──────────────────────────────


def _stages(metrics: FunnelMetrics, model: EngagementModel) -> list[dict[str, Any]]:
    return [{"stage": s.label, "count": getattr(metrics, s.name, 0)} for s in model.funnel_stages]


def funnel_visualization(metrics: FunnelMetrics, title: str, model: EngagementModel | None = None) -> Visualization:
    if model is None:
        model = load_engagement_model()
    return Visualization(
        kind="funnel",
        title=title,
        payload={"stages": _stages(metrics, model), "metrics": metrics.to_dict()},
    )


def comparison_visualization(
    funnels: Mapping[str, FunnelMetrics],
    title: str,
    model: EngagementModel | None = None,
) -> Visualization:
    if model is None:
        model = load_engagement_model()
    labels = list(funnels)
    payload: dict[str, Any] = {
        "subjects": [
            {"label": label, "stages": _stages(m, model), "metrics": m.to_dict()}
            for label, m in funnels.items()
        ],
    }
    if len(labels) == 2:
        payload["diff"] = compare_funnels(funnels[labels[0]], funnels[labels[1]])
    return Visualization(kind="comparison", title=title, payload=payload)


def dimensional_visualization(
    dimension: str,
    funnels: Mapping[str, FunnelMetrics],
    title: str,
    kind: VisualizationKind = "dimensional_funnel",
) -> Visualization:
    if kind == "trend":
        keys = sorted(funnels)
    else:
        keys = sorted(funnels, key=lambda k: funnels[k].deliveries, reverse=True)
    return Visualization(
        kind=kind,
        title=title,
        payload={
            "dimension": dimension,
            "groups": [{"value": k, "metrics": funnels[k].to_dict()} for k in keys],
        },
    )


def table_visualization(rows: Sequence[Mapping[str, Any]], title: str) -> Visualization:
    columns = list(rows[0].keys()) if rows else []
    return Visualization(
        kind="table",
        title=title,
        payload={"columns": columns, "rows": [dict(r) for r in rows]},
    )


def text_response(question: str, narrative: str, **kwargs: Any) -> ChatResponse:
    """Envelope with narrative only (help text, errors)."""
    return ChatResponse(question=question, narrative=narrative, **kwargs)
