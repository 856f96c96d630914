"""
Copilot service -- orchestrates plan -> safety -> execute -> aggregate -> narrate.

``ask`` is the whole chat turn.  It never raises for user input: every
outcome is a ChatResponse tagged with an ErrorKind when something went
wrong, so callers can tell a resolution miss from a transient failure from
unsafe input.

  - general questions          -> help text
  - catalogue questions        -> names or counts; unfiltered program and
                                  lesson lists come from distinct_values
  - comparison with one match  -> names the match, asks for a second
  - planning failure           -> default plan, tagged PLANNING_FAILURE
  - unsafe SQL                 -> blocked before any executor sees it
  - executor error / timeout   -> apologetic narrative + follow-ups
  - zero rows                  -> "no data found" + per-filter diagnostics

Comparison subjects are fetched concurrently on a two-worker thread pool
and joined with a bounded timeout.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date
from typing import Any

from src.copilot.aggregator import aggregate_dimensional, aggregate_funnel, FunnelMetrics
from src.copilot.deep_dive import build_deep_dive_plan, diagnose_empty_result, suggest_deep_dives
from src.copilot.explainer import (
    catalog_answer,
    catalog_follow_ups,
    comparison_insights,
    dimensional_insights,
    error_follow_ups,
    explain_error,
    funnel_insights,
    help_text,
    narrate,
    suggest_follow_ups,
    trend_insights,
)
from src.copilot.formatter import (
    ChatResponse,
    comparison_visualization,
    dimensional_visualization,
    funnel_visualization,
    table_visualization,
    text_response,
)
from src.copilot.intent import IntentType, QueryIntent, QueryPlan
from src.copilot.memory import ConversationMemory, get_memory_store
from src.copilot.planner import parse_question, plan
from src.copilot.sql_generator import CATALOG_KINDS
from src.core.config import get_settings
from src.core.errors import CopilotError, ErrorKind, ExecutionError, QueryTimeoutError, UnsafeQueryError
from src.db.executor import QueryExecutor, get_executor, normalise_result
from src.governance.semantic_loader import load_engagement_model
from src.governance.sql_safety import check_sql_safety, ensure_read_only
from src.core.logging import get_logger, kv

logger = get_logger(__name__)


# ── Execution helpers ───────────────────────────────────


def run_statement(executor: QueryExecutor, sql: str) -> list[dict[str, Any]]:
    """Requesting-side safety gate, then execute and normalise the result."""
    ensure_read_only(sql)
    return normalise_result(executor.execute(sql))


def _run_concurrently(executor: QueryExecutor, statements: dict[str, str]) -> dict[str, list[dict[str, Any]]]:
    """Run each labelled statement on its own worker; fail if any fails."""
    timeout = get_settings().query_timeout_s + 5
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="compare")
    try:
        futures = {label: pool.submit(run_statement, executor, sql) for label, sql in statements.items()}
        results: dict[str, list[dict[str, Any]]] = {}
        deadline = time.monotonic() + timeout
        for label, future in futures.items():
            remaining = max(deadline - time.monotonic(), 0)
            try:
                results[label] = future.result(timeout=remaining)
            except FutureTimeout as exc:
                raise QueryTimeoutError(f"Fetching '{label}' timed out") from exc
            except ExecutionError as exc:
                raise type(exc)(f"Fetching '{label}' failed: {exc.message}", code=exc.code) from exc
        return results
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def _distinct_lookup_column(plan_: QueryPlan, intent: QueryIntent) -> str | None:
    """Column to list through ``distinct_values`` for an unfiltered catalogue plan."""
    if plan_.intent_type != IntentType.CATALOG or plan_.filters:
        return None
    kind = CATALOG_KINDS.get(intent.catalog_entity or "")
    if kind is None or intent.catalog_entity == "regions":
        return None
    return load_engagement_model().column(kind)


def _check_plan_safety(plan_: QueryPlan) -> list[str]:
    errors: list[str] = []
    for sql in plan_.statements().values():
        errors.extend(e for e in check_sql_safety(sql) if e not in errors)
    return errors


# ── Response builders ───────────────────────────────────


def _error_response(
    question: str,
    kind: ErrorKind,
    detail: str | None = None,
    **kwargs: Any,
) -> ChatResponse:
    return text_response(
        question,
        explain_error(kind, detail),
        error_kind=kind,
        retryable=kind == ErrorKind.TIMEOUT,
        follow_ups=error_follow_ups(kind),
        **kwargs,
    )


def _catalog_answer(
    question: str,
    intent: QueryIntent,
    plan_: QueryPlan,
    rows: list[dict[str, Any]],
    mode: str,
) -> ChatResponse:
    entity = intent.catalog_entity or "programs"
    action = intent.catalog_action or "list"
    headline, lines = catalog_answer(entity, action, rows, plan_.explanation)
    return ChatResponse(
        question=question,
        narrative=narrate(question, headline, lines, mode=mode),
        insights=lines,
        visualization=table_visualization(rows, plan_.intent) if entity != "customers" else None,
        follow_ups=catalog_follow_ups(entity),
        plan=plan_,
        row_count=len(rows),
    )


def _build_answer(
    question: str,
    intent: QueryIntent,
    plan_: QueryPlan,
    results: dict[str, list[dict[str, Any]]],
    mode: str,
) -> ChatResponse:
    model = load_engagement_model()
    row_count = sum(len(r) for r in results.values())

    if plan_.intent_type == IntentType.CATALOG:
        return _catalog_answer(question, intent, plan_, results["main"], mode)
    if plan_.visualization == "comparison":
        funnels: dict[str, FunnelMetrics] = {label: aggregate_funnel(rows, model) for label, rows in results.items()}
        labels = list(funnels)
        headline = f"**{' vs '.join(labels)}** ({plan_.explanation})" if plan_.explanation else f"**{' vs '.join(labels)}**"
        insights = comparison_insights(funnels)
        viz = comparison_visualization(funnels, plan_.intent, model)
    elif plan_.visualization in ("dimensional_funnel", "trend"):
        rows = results["main"]
        dimension = plan_.dimension or "value"
        funnels = aggregate_dimensional(rows, dimension, model)
        dim = model.dimension(dimension)
        label = dim.label if dim else dimension.title()
        if plan_.visualization == "trend":
            headline = f"**Funnel trend** for {plan_.explanation}"
            insights = trend_insights(funnels)
        else:
            headline = f"**Funnel by {label.lower()}** for {plan_.explanation}"
            insights = dimensional_insights(label, funnels)
        viz = dimensional_visualization(dimension, funnels, plan_.intent, kind=plan_.visualization)
    elif plan_.visualization == "table":
        rows = results["main"]
        headline = f"**{plan_.intent}**"
        insights = [f"{len(rows)} rows."]
        viz = table_visualization(rows, plan_.intent)
    else:
        metrics = aggregate_funnel(results["main"], model)
        headline = f"**Funnel** for {plan_.explanation or plan_.intent}"
        insights = funnel_insights(metrics)
        viz = funnel_visualization(metrics, plan_.intent, model)

    narrative = narrate(question, headline, insights, mode=mode)
    response = ChatResponse(
        question=question,
        narrative=narrative,
        insights=insights,
        visualization=viz,
        follow_ups=suggest_follow_ups(intent, model),
        deep_dives=[o.to_dict() for o in suggest_deep_dives(intent)],
        plan=plan_,
        row_count=row_count,
    )
    if plan_.is_fallback:
        response.error_kind = ErrorKind.PLANNING_FAILURE
        response.narrative = explain_error(ErrorKind.PLANNING_FAILURE) + "\n\n" + response.narrative
    return response


def _execute_plan(
    question: str,
    intent: QueryIntent,
    plan_: QueryPlan,
    executor: QueryExecutor,
    mode: str,
) -> ChatResponse:
    """Run every statement of *plan_* and shape the answer."""
    distinct_column = _distinct_lookup_column(plan_, intent)
    try:
        if plan_.subject_sql:
            results = _run_concurrently(executor, plan_.subject_sql)
        elif distinct_column is not None:
            results = {"main": [{"value": v} for v in executor.distinct_values(distinct_column)]}
        else:
            results = {"main": run_statement(executor, plan_.sql)}
    except UnsafeQueryError as exc:
        logger.warning("Unsafe SQL blocked | %s", kv(keyword=exc.keyword))
        return _error_response(question, ErrorKind.UNSAFE_QUERY, " ".join(exc.violations), plan=plan_)
    except QueryTimeoutError as exc:
        logger.warning("Query timed out: %s", exc)
        return _error_response(question, ErrorKind.TIMEOUT, plan=plan_)
    except ExecutionError as exc:
        logger.warning("Query execution failed: %s", exc)
        detail = exc.message if not plan_.subject_sql else f"{exc.message} The comparison could not be completed."
        return _error_response(question, ErrorKind.EXECUTION_FAILURE, detail, plan=plan_)
    except Exception as exc:
        logger.exception("Executor raised an unexpected error")
        detail = str(exc) if not plan_.subject_sql else f"{exc} The comparison could not be completed."
        return _error_response(question, ErrorKind.EXECUTION_FAILURE, detail, plan=plan_)

    if all(not rows for rows in results.values()):
        diagnostics: list[str] = []
        if get_settings().diagnose_empty_results and plan_.filters:
            diagnostics = diagnose_empty_result(plan_.filters, lambda sql: run_statement(executor, sql))
        detail = " ".join(diagnostics) or "Try widening the time range or removing a filter."
        return _error_response(question, ErrorKind.EMPTY_RESULT, detail, plan=plan_, diagnostics=diagnostics)

    return _build_answer(question, intent, plan_, results, mode)


def _second_subject_prompt(intent: QueryIntent) -> str:
    subjects = intent.comparison_subjects()
    if not subjects:
        return (
            "I couldn't find two programs, lessons or regions to compare. "
            "Try *Compare ASG Primary Path with LPW Path*."
        )
    found = ", ".join(subjects[0].values)
    return f"I found **{found}**. What would you like to compare it with?"


# ── Public API ──────────────────────────────────────────


def ask(
    question: str,
    session_id: str | None = None,
    mode: str = "mock",
    execute: bool = True,
    executor: QueryExecutor | None = None,
    today: date | None = None,
) -> ChatResponse:
    """End-to-end: question -> ChatResponse.

    Parameters
    ----------
    question : str
        Natural-language question about the engagement funnel.
    session_id : str, optional
        Conversation id; enables memory for follow-ups like "break this down".
    mode : str
        Planner / narrative mode -- "mock", "openai" or "anthropic".
    execute : bool
        If False, return the plan and SQL without executing (dry run).
    executor : QueryExecutor, optional
        Defaults to the configured executor.  Also used for live value lookups.
    today : date, optional
        Reference date for quarter resolution.
    """
    t0 = time.perf_counter()
    logger.info("Copilot.ask | %s", kv(question=question, mode=mode, execute=execute, session=session_id))
    memory: ConversationMemory | None = get_memory_store().get(session_id) if session_id else None

    if executor is None and execute:
        try:
            executor = get_executor()
        except Exception as exc:
            logger.exception("No query executor available")
            return _finish(_error_response(question, ErrorKind.EXECUTION_FAILURE, str(exc)), t0, session_id)

    try:
        outcome = plan(question, mode=mode, lookup=executor, memory=memory, today=today)
    except UnsafeQueryError as exc:
        logger.warning("LLM produced unsafe SQL | %s", kv(keyword=exc.keyword))
        return _finish(_error_response(question, ErrorKind.UNSAFE_QUERY, " ".join(exc.violations)), t0, session_id)

    intent = outcome.intent
    diagnostics = [f"Live values unavailable for: {', '.join(intent.lookup_failures)}"] if intent.lookup_failures else []

    if intent.type == IntentType.GENERAL:
        model = load_engagement_model()
        response = text_response(
            question, help_text(model), follow_ups=error_follow_ups(ErrorKind.RESOLUTION_MISS), diagnostics=diagnostics,
        )
        return _finish(response, t0, session_id)

    if outcome.needs_second_subject:
        response = text_response(
            question,
            _second_subject_prompt(intent),
            error_kind=ErrorKind.RESOLUTION_MISS,
            follow_ups=error_follow_ups(ErrorKind.RESOLUTION_MISS),
            diagnostics=diagnostics,
        )
        if memory is not None:
            memory.remember(intent)
        return _finish(response, t0, session_id)

    plan_ = outcome.plan
    safety_errors = _check_plan_safety(plan_)
    if safety_errors:
        return _finish(
            _error_response(question, ErrorKind.UNSAFE_QUERY, " ".join(safety_errors), plan=plan_), t0, session_id,
        )

    if not execute:
        response = text_response(
            question,
            f"**Dry run:** {plan_.intent}",
            plan=plan_,
            error_kind=ErrorKind.PLANNING_FAILURE if plan_.is_fallback else None,
            diagnostics=diagnostics,
        )
        return _finish(response, t0, session_id)

    response = _execute_plan(question, intent, plan_, executor, mode)
    response.diagnostics = diagnostics + response.diagnostics
    if memory is not None and response.error_kind not in (ErrorKind.UNSAFE_QUERY,):
        memory.remember(intent, response.insights)
    return _finish(response, t0, session_id)


def deep_dive(
    question: str,
    kind: str,
    session_id: str | None = None,
    mode: str = "mock",
    executor: QueryExecutor | None = None,
    today: date | None = None,
) -> ChatResponse:
    """Run one deep dive (quarterly / assignment / regional) for *question*."""
    t0 = time.perf_counter()
    logger.info("Copilot.deep_dive | %s", kv(kind=kind, question=question))
    memory = get_memory_store().get(session_id) if session_id else None
    try:
        if executor is None:
            executor = get_executor()
        intent = parse_question(question, lookup=executor, memory=memory, today=today)
        plan_ = build_deep_dive_plan(kind, intent)
    except KeyError:
        return _finish(
            text_response(question, f"Unknown deep dive '{kind}'.", error_kind=ErrorKind.RESOLUTION_MISS), t0, session_id,
        )
    except CopilotError as exc:
        return _finish(_error_response(question, exc.kind, str(exc)), t0, session_id)
    except Exception as exc:
        logger.exception("Deep dive planning failed")
        return _finish(_error_response(question, ErrorKind.EXECUTION_FAILURE, str(exc)), t0, session_id)
    return _finish(_execute_plan(question, intent, plan_, executor, mode), t0, session_id)


def _finish(response: ChatResponse, t0: float, session_id: str | None) -> ChatResponse:
    response.latency_ms = round((time.perf_counter() - t0) * 1000, 1)
    response.session_id = session_id
    logger.info(
        "Copilot.done | %s",
        kv(error=response.error_kind.value if response.error_kind else None,
           rows=response.row_count, latency_ms=response.latency_ms),
    )
    return response
