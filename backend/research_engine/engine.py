from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine, Iterator, Protocol

from .budget import Budget, budget_for
from .config import Settings
from .db import ResearchStore, utc_now_iso
from .errors import PersistenceError, RunNotFound, RunStateConflict
from .executor import StepLedger, SubQuestionExecutor, SubQuestionOutcome
from .llm import LLMClient, StructuredLLM
from .models import TERMINAL_STATUSES, CreatePlanRequest, CreateTasksRequest, Plan
from .planner import PlanGenerator, normalize_plan
from .providers import PageFetcher, ResearchToolkit, WebSearch
from .quality import aggregate_confidence, assess_run_quality, classify
from .report import ReportSynthesizer
from .scoring import EvidenceScorer, LexicalEvidenceScorer

logger = logging.getLogger(__name__)

STATUS_EVENT_LIMIT = 80
MAX_ACQUISITION_WARNINGS = 20


class EventBus:
    """In-memory pub/sub for streaming run events to SSE clients."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, run_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        async with self._lock:
            self._subscribers.setdefault(run_id, set()).add(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            run_subscribers = self._subscribers.get(run_id)
            if not run_subscribers:
                return
            run_subscribers.discard(queue)
            if not run_subscribers:
                self._subscribers.pop(run_id, None)

    async def publish(self, run_id: str, event: dict[str, Any]) -> None:
        async with self._lock:
            queues = list(self._subscribers.get(run_id, set()))
        for queue in queues:
            queue.put_nowait(event)


class RunRegistry:
    """Background task handles keyed by run id."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def start(self, run_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            raise RunStateConflict("Run is already executing", context={"run_id": run_id})
        task = asyncio.create_task(coro, name=f"research-run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._discard(run_id, task))
        return task

    def _discard(self, run_id: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(run_id) is task:
            self._tasks.pop(run_id, None)

    def is_active(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait(self, run_id: str, timeout: float | None = None) -> None:
        task = self._tasks.get(run_id)
        if task is None:
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class TaskGateway(Protocol):
    def create_task(
        self,
        *,
        household_id: str,
        created_by_id: str | None,
        conversation_id: str | None,
        title: str,
        description: str | None,
        due_date: str | None,
        assigned_to_id: str | None,
        priority: int,
        source_run_id: str,
    ) -> str: ...


class StoreTaskGateway:
    """Writes follow-up tasks into the research store's task table."""

    def __init__(self, store: ResearchStore) -> None:
        self.store = store

    def create_task(self, **fields: Any) -> str:
        return self.store.insert_task(**fields)["id"]


@dataclass
class RunContext:
    run_id: str
    query: str
    recency_days: int | None
    plan: Plan
    budget: Budget
    metrics: dict[str, Any]
    ledger: StepLedger
    elapsed_offset: float = 0.0
    started_monotonic: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_requested: bool = False
    stop_reason: str | None = None

    def elapsed(self) -> float:
        return self.elapsed_offset + (time.monotonic() - self.started_monotonic)

    @property
    def deadline(self) -> float:
        return self.started_monotonic + (self.budget.max_runtime_seconds - self.elapsed_offset)

    @property
    def completed(self) -> list[str]:
        return self.metrics["completed_sub_questions"]


def initial_metrics(plan: Plan, budget: Budget, planner: dict[str, Any]) -> dict[str, Any]:
    return {
        "phase": "planning",
        "step_count": 0,
        "source_count": 0,
        "finding_count": 0,
        "elapsed_seconds": 0.0,
        "completed_sub_questions": [],
        "total_sub_questions": len(plan.sub_questions),
        "budget": budget.to_dict(),
        "aggregate_confidence_history": [],
        "failed_soft_sub_questions": [],
        "skipped_sub_questions": [],
        "warnings": [],
        "acquisition_warnings": [],
        "unknowns": [],
        "suggested_actions": [],
        "stop_reason": None,
        "failure_reason": planner.get("reason") if planner.get("status") == "fallback" else None,
        "quality_score": None,
        "cancel_requested": False,
        "planner": planner,
    }


def run_summary(run: dict[str, Any]) -> dict[str, Any]:
    metrics = run.get("metrics") or {}
    return {
        "id": run["id"],
        "status": run["status"],
        "query": run["query"],
        "effort": run["effort"],
        "quality_score": run["quality_score"],
        "phase": metrics.get("phase"),
        "completed_sub_questions": len(metrics.get("completed_sub_questions") or []),
        "total_sub_questions": metrics.get("total_sub_questions"),
        "planner_status": (metrics.get("planner") or {}).get("status"),
        "created_at": run["created_at"],
        "updated_at": run["updated_at"],
        "completed_at": run["completed_at"],
    }


class ResearchOrchestrator:
    """Owns the run state machine: plan, start, research loop, report, cancel, resume."""

    def __init__(
        self,
        settings: Settings,
        store: ResearchStore,
        bus: EventBus | None = None,
        llm: StructuredLLM | None = None,
        search: WebSearch | None = None,
        fetcher: PageFetcher | None = None,
        scorer: EvidenceScorer | None = None,
        registry: RunRegistry | None = None,
        task_gateway: TaskGateway | None = None,
        executor: SubQuestionExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.bus = bus or EventBus()
        self.registry = registry or RunRegistry()
        self.task_gateway = task_gateway or StoreTaskGateway(store)

        if llm is None and settings.llm_api_key:
            llm = LLMClient(
                base_url=settings.llm_base_url,
                api_key=settings.llm_api_key,
                default_model=settings.llm_model_researcher,
                temperature=settings.research_model_temperature,
                timeout=settings.llm_timeout_seconds,
            )
        self.llm = llm

        if search is None or fetcher is None:
            toolkit = ResearchToolkit(
                tavily_api_key=settings.tavily_api_key,
                serper_api_key=settings.serper_api_key,
                provider_order=settings.search_provider_order,
                search_retry_attempts=settings.search_retry_attempts,
                fetch_timeout_seconds=settings.fetch_timeout_seconds,
                fetch_max_chars=settings.fetch_max_chars,
            )
            search = search or toolkit
            fetcher = fetcher or toolkit

        self.planner = PlanGenerator(llm, model=settings.llm_model_planner, attempts=settings.llm_retry_attempts)
        self.executor = executor or SubQuestionExecutor(
            store=store,
            search=search,
            fetcher=fetcher,
            scorer=scorer or LexicalEvidenceScorer(),
            llm=llm,
            model=settings.llm_model_researcher,
            llm_attempts=settings.llm_retry_attempts,
            search_limit=settings.search_results_limit,
            max_fetch_per_attempt=settings.max_fetch_per_attempt,
            trusted_domains=settings.trusted_domains,
            blocked_domains=settings.blocked_domains,
            emit=self._safe_emit,
        )
        self.reporter = ReportSynthesizer(llm, model=settings.llm_model_reporter, attempts=2)

        self._contexts: dict[str, RunContext] = {}
        self._lock = asyncio.Lock()

    # === Public operations ===

    async def create_plan(
        self,
        conversation_id: str,
        household_id: str,
        user_id: str | None,
        request: CreatePlanRequest,
    ) -> dict[str, Any]:
        budget = budget_for(request.effort)
        result = await self.planner.generate(request, budget)
        if result.is_fallback:
            logger.warning("Planner fell back for conversation %s: %s", conversation_id, result.planner.get("reason"))

        run = self.store.create_run(
            conversation_id=conversation_id,
            household_id=household_id,
            created_by_id=user_id,
            query=request.query.strip(),
            effort=request.effort,
            recency_days=request.recency_days,
            plan=result.plan.model_dump(),
            metrics=initial_metrics(result.plan, budget, result.planner),
        )
        await self._safe_emit(
            run["id"],
            "planning",
            "completed",
            "Research plan generated and awaiting approval.",
            payload={
                "sub_question_count": len(result.plan.sub_questions),
                "effort": request.effort,
                "planner_status": result.planner.get("status"),
            },
        )
        return {
            "run_id": run["id"],
            "plan": result.plan.model_dump(),
            "budget": budget.to_dict(),
            "planner": result.planner,
        }

    async def start_run(
        self,
        run_id: str,
        conversation_id: str,
        household_id: str,
        plan: Plan | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            run = self._owned_run(run_id, conversation_id, household_id)
            status = run["status"]

            if status in TERMINAL_STATUSES:
                raise RunStateConflict(
                    "Run has already finished; create a new plan to research again",
                    context={"run_id": run_id, "status": status},
                )

            if status == "running":
                if self.registry.is_active(run_id):
                    return run
                logger.info("Resuming stale run %s", run_id)
                self._launch(run)
                return run

            metrics = dict(run["metrics"])
            if plan is not None:
                edited = normalize_plan(plan.model_dump(), run["query"])
                metrics["total_sub_questions"] = len(edited.sub_questions)
                run["plan"] = edited.model_dump()
                self.store.update_run(run_id, plan=run["plan"])

            metrics["phase"] = "researching"
            self.store.update_run(run_id, status="running", started_at=utc_now_iso(), metrics=metrics)
            run = self._owned_run(run_id, conversation_id, household_id)
            await self._safe_emit(
                run_id,
                "run",
                "started",
                "Research run started.",
                payload={"budget": metrics["budget"], "sub_question_count": metrics["total_sub_questions"]},
            )
            self._launch(run)
            return run

    async def cancel_run(self, run_id: str, conversation_id: str, household_id: str) -> dict[str, Any]:
        async with self._lock:
            run = self._owned_run(run_id, conversation_id, household_id)
            status = run["status"]
            if status in TERMINAL_STATUSES:
                return run

            ctx = self._contexts.get(run_id)
            if status == "running" and ctx is not None:
                async with ctx.lock:
                    ctx.cancel_requested = True
                    ctx.metrics["cancel_requested"] = True
                    self._persist_metrics(ctx)
                await self._safe_emit(run_id, "run", "info", "Cancellation requested; stopping at the next checkpoint.")
                return self.store.get_run(run_id) or run

            metrics = dict(run["metrics"])
            metrics.update({"phase": "canceled", "cancel_requested": True, "stop_reason": "canceled"})
            self.store.update_run(run_id, status="canceled", metrics=metrics, completed_at=utc_now_iso())
            await self._safe_emit(
                run_id,
                "run",
                "completed",
                "Research run canceled.",
                payload={"terminal": True, "status": "canceled"},
            )
            return self.store.get_run(run_id) or run

    async def get_run_status(self, run_id: str, conversation_id: str, household_id: str) -> dict[str, Any]:
        run = self._owned_run(run_id, conversation_id, household_id)
        return {
            "run": run,
            "sources": self.store.list_sources(run_id),
            "findings": self.store.list_findings(run_id),
            "report": self.store.get_report(run_id),
            "events": self.store.latest_events(run_id, limit=STATUS_EVENT_LIMIT),
        }

    async def list_runs_for_conversation(self, conversation_id: str, household_id: str) -> list[dict[str, Any]]:
        return [run_summary(run) for run in self.store.list_runs(conversation_id, household_id)]

    async def get_events(
        self,
        run_id: str,
        conversation_id: str,
        household_id: str,
        after_id: int = 0,
        limit: int = 300,
    ) -> list[dict[str, Any]]:
        self._owned_run(run_id, conversation_id, household_id)
        return self.store.list_events(run_id, after_id=after_id, limit=limit)

    async def create_tasks_from_run(
        self,
        run_id: str,
        conversation_id: str,
        household_id: str,
        user_id: str | None,
        request: CreateTasksRequest,
    ) -> list[str]:
        self._owned_run(run_id, conversation_id, household_id)
        findings = {finding["id"]: finding for finding in self.store.list_findings(run_id)}
        report = self.store.get_report(run_id)
        created: list[str] = []

        for finding_id in dict.fromkeys(request.finding_ids):
            finding = findings.get(finding_id)
            if finding is None:
                continue
            created.append(
                self.task_gateway.create_task(
                    household_id=household_id,
                    created_by_id=user_id,
                    conversation_id=conversation_id,
                    title=f"Follow up: {finding['sub_question']}"[:500],
                    description=finding["claim"],
                    due_date=None,
                    assigned_to_id=None,
                    priority=0,
                    source_run_id=run_id,
                )
            )

        report_actions = list(report["actions"]) if report else []
        actions_changed = False
        for item in request.action_items:
            task_id = self.task_gateway.create_task(
                household_id=household_id,
                created_by_id=user_id,
                conversation_id=conversation_id,
                title=item.title.strip(),
                description=item.description,
                due_date=item.due_date,
                assigned_to_id=item.assigned_to_id,
                priority=item.priority,
                source_run_id=run_id,
            )
            created.append(task_id)
            for action in report_actions:
                if action.get("created_task_id") or action["title"].strip().lower() != item.title.strip().lower():
                    continue
                action["created_task_id"] = task_id
                actions_changed = True
                break

        if actions_changed:
            self.store.update_report_actions(run_id, report_actions)
        if created:
            await self._safe_emit(
                run_id,
                "tasks",
                "info",
                f"Created {len(created)} follow-up tasks.",
                payload={"task_ids": created},
            )
        return created

    async def resume_interrupted_runs(self) -> dict[str, int]:
        resumed = 0
        failed = 0
        for run in self.store.list_runs_by_status("running"):
            run_id = run["id"]
            if self.registry.is_active(run_id):
                continue

            if self.settings.resume_interrupted_runs:
                await self._safe_emit(
                    run_id,
                    "run",
                    "info",
                    "Resuming run from its last checkpoint.",
                    payload={"completed_sub_questions": len(run["metrics"].get("completed_sub_questions") or [])},
                )
                self._launch(run)
                resumed += 1
                continue

            metrics = dict(run["metrics"])
            reason = "Run was interrupted by a server restart."
            metrics.update({"phase": "failed", "failure_reason": reason})
            self.store.update_run(run_id, status="failed", error=reason, metrics=metrics, completed_at=utc_now_iso())
            await self._safe_emit(run_id, "run", "failed", reason, payload={"terminal": True, "status": "failed"})
            failed += 1

        if resumed or failed:
            logger.info("Interrupted runs: %s resumed, %s failed", resumed, failed)
        return {"resumed_runs": resumed, "failed_runs": failed}

    async def wait_for_run(self, run_id: str, timeout: float | None = None) -> None:
        await self.registry.wait(run_id, timeout=timeout)

    async def shutdown(self) -> None:
        await self.registry.shutdown()

    # === Run loop ===

    def _owned_run(self, run_id: str, conversation_id: str, household_id: str) -> dict[str, Any]:
        run = self.store.find_run(run_id, conversation_id, household_id)
        if run is None:
            raise RunNotFound("Research run not found", context={"run_id": run_id})
        return run

    def _launch(self, run: dict[str, Any]) -> None:
        metrics = dict(run["metrics"])
        for key, default in initial_metrics(Plan.model_validate(run["plan"]), budget_for(run["effort"]), {}).items():
            metrics.setdefault(key, default)
        budget = Budget.from_dict(metrics["budget"])
        ctx = RunContext(
            run_id=run["id"],
            query=run["query"],
            recency_days=run["recency_days"],
            plan=Plan.model_validate(run["plan"]),
            budget=budget,
            metrics=metrics,
            ledger=StepLedger(budget.max_steps, used=int(metrics.get("step_count") or 0)),
            elapsed_offset=float(metrics.get("elapsed_seconds") or 0.0),
            cancel_requested=bool(metrics.get("cancel_requested")),
        )
        self._contexts[ctx.run_id] = ctx
        self.registry.start(ctx.run_id, self._run_loop(ctx))

    async def _run_loop(self, ctx: RunContext) -> None:
        logger.info(
            "Research run %s started (%s/%s sub-questions done)",
            ctx.run_id,
            len(ctx.completed),
            len(ctx.plan.sub_questions),
        )
        try:
            await self._research(ctx)
            if ctx.cancel_requested:
                await self._finish_canceled(ctx)
            else:
                await self._finalize(ctx)
        except asyncio.CancelledError:
            logger.info("Research run %s interrupted; it stays resumable", ctx.run_id)
            raise
        except Exception as exc:
            logger.exception("Research run %s failed", ctx.run_id)
            await self._fail_run(ctx, exc)
        finally:
            self._contexts.pop(ctx.run_id, None)

    async def _research(self, ctx: RunContext) -> None:
        remaining = [question for question in ctx.plan.sub_questions if question not in ctx.completed]
        if not remaining:
            return
        pending: Iterator[str] = iter(remaining)

        async def worker() -> None:
            while True:
                async with ctx.lock:
                    sub_question = self._next_sub_question(ctx, pending)
                if sub_question is None:
                    return
                outcome = await self.executor.execute(
                    run_id=ctx.run_id,
                    sub_question=sub_question,
                    query=ctx.query,
                    objective=ctx.plan.objective,
                    budget=ctx.budget,
                    stop_criteria=ctx.plan.stop_criteria,
                    ledger=ctx.ledger,
                    recency_days=ctx.recency_days,
                    deadline=ctx.deadline,
                    sub_question_index=ctx.plan.sub_questions.index(sub_question),
                )
                async with ctx.lock:
                    await self._record_completion(ctx, outcome)

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(max(1, self.settings.sub_question_concurrency), len(remaining)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    def _next_sub_question(self, ctx: RunContext, pending: Iterator[str]) -> str | None:
        if ctx.cancel_requested or ctx.stop_reason:
            return None
        if ctx.elapsed() >= ctx.budget.max_runtime_seconds:
            ctx.stop_reason = "runtime_exhausted"
            return None
        sub_question = next(pending, None)
        if sub_question is None:
            return None
        if not ctx.ledger.try_reserve():
            ctx.stop_reason = "step_budget_exhausted"
            return None
        return sub_question

    async def _record_completion(self, ctx: RunContext, outcome: SubQuestionOutcome) -> None:
        metrics = ctx.metrics
        metrics["completed_sub_questions"].append(outcome.sub_question)
        if outcome.failed_soft:
            metrics["failed_soft_sub_questions"].append(outcome.sub_question)
        metrics["unknowns"].extend(outcome.unknowns)
        metrics["suggested_actions"].extend(outcome.actions)
        metrics["acquisition_warnings"] = (metrics["acquisition_warnings"] + outcome.warnings)[-MAX_ACQUISITION_WARNINGS:]

        findings = self.store.list_findings(ctx.run_id)
        source_count = self.store.count_sources(ctx.run_id)
        confidence = aggregate_confidence(findings, ctx.plan.sub_questions)
        metrics["aggregate_confidence_history"].append(round(confidence, 4))
        metrics["step_count"] = ctx.ledger.used
        metrics["source_count"] = source_count
        metrics["finding_count"] = len(findings)
        self._persist_metrics(ctx)

        await self._safe_emit(
            ctx.run_id,
            "research",
            "progress",
            f"Completed {len(ctx.completed)}/{len(ctx.plan.sub_questions)} sub-questions.",
            sub_question=outcome.sub_question,
            payload={
                "aggregate_confidence": round(confidence, 4),
                "step_count": ctx.ledger.used,
                "source_count": source_count,
                "failed_soft": outcome.failed_soft,
                "warnings": outcome.warnings,
            },
        )

        if ctx.stop_reason is None:
            ctx.stop_reason = self._stop_decision(ctx, source_count)
            if ctx.stop_reason:
                logger.info("Research run %s stopping: %s", ctx.run_id, ctx.stop_reason)

    def _stop_decision(self, ctx: RunContext, source_count: int) -> str | None:
        if ctx.elapsed() >= ctx.budget.max_runtime_seconds:
            return "runtime_exhausted"
        if ctx.ledger.used >= ctx.budget.max_steps:
            return "step_budget_exhausted"

        remaining = len(ctx.completed) < len(ctx.plan.sub_questions)
        if source_count < ctx.budget.min_sources and remaining:
            return None

        window = ctx.plan.stop_criteria.diminishing_returns_window
        history = [0.0, *ctx.metrics["aggregate_confidence_history"]]
        if remaining and len(history) > window:
            # Aggregate confidence is a plan-wide mean; scale each step back to one sub-question.
            total = len(ctx.plan.sub_questions)
            gains = [(history[i] - history[i - 1]) * total for i in range(len(history) - window, len(history))]
            if all(gain < ctx.plan.stop_criteria.diminishing_returns_delta for gain in gains):
                return "diminishing_returns"
        return None

    async def _finalize(self, ctx: RunContext) -> None:
        run_id = ctx.run_id
        metrics = ctx.metrics
        metrics["phase"] = "synthesizing"
        self._persist_metrics(ctx)
        await self._safe_emit(run_id, "synthesis", "started", "Assembling the final report.")

        findings = self.store.list_findings(run_id)
        sources = self.store.list_sources(run_id)
        skipped = [question for question in ctx.plan.sub_questions if question not in ctx.completed]
        failed_soft = len(metrics["failed_soft_sub_questions"])

        assessment = assess_run_quality(
            findings,
            source_count=len(sources),
            total_sub_questions=len(ctx.plan.sub_questions),
            budget=ctx.budget,
            failed_soft=failed_soft,
        )
        warnings = list(assessment.warnings)
        if skipped:
            warnings.append(f"{len(skipped)} sub-question(s) were not researched ({ctx.stop_reason or 'stopped'}).")
        await self._safe_emit(
            run_id,
            "quality-check",
            "completed",
            f"Quality score {assessment.score:.2f} with {len(warnings)} warnings.",
            payload={"quality_score": round(assessment.score, 4), "warnings": warnings},
        )

        draft = await self.reporter.synthesize(
            query=ctx.query,
            objective=ctx.plan.objective,
            findings=findings,
            sources=sources,
            unknowns=metrics["unknowns"],
            raw_actions=metrics["suggested_actions"],
            quality_warnings=warnings,
            total_sub_questions=len(ctx.plan.sub_questions),
        )
        self.store.insert_report(
            run_id,
            summary=draft.summary,
            report_markdown=draft.report_markdown,
            actions=draft.actions,
            presentation=draft.presentation,
        )
        warnings.extend(draft.warnings)
        await self._safe_emit(
            run_id,
            "presentation",
            "completed" if not draft.fallback else "failed",
            "Report synthesized." if not draft.fallback else "Report synthesis fell back to a deterministic report.",
            payload={"fallback": draft.fallback, "block_count": len((draft.presentation or {}).get("blocks", []))},
        )

        status = classify(
            assessment,
            confidence_target=ctx.plan.stop_criteria.confidence_target,
            failed_soft=failed_soft,
            skipped=len(skipped),
            report_fallback=draft.fallback,
        )
        failure_reason = "No usable findings were produced." if status == "failed" else None
        quality_score = None if status == "failed" else round(assessment.score, 4)
        metrics.update(
            {
                "phase": "failed" if status == "failed" else "complete",
                "skipped_sub_questions": skipped,
                "warnings": warnings,
                "stop_reason": ctx.stop_reason or "all_sub_questions_processed",
                "quality_score": quality_score,
                "failure_reason": failure_reason,
                "source_count": len(sources),
                "finding_count": len(findings),
                "step_count": ctx.ledger.used,
            }
        )
        metrics["elapsed_seconds"] = round(ctx.elapsed(), 2)
        self.store.update_run(
            run_id,
            status=status,
            quality_score=quality_score,
            error=failure_reason,
            metrics=metrics,
            completed_at=utc_now_iso(),
        )
        logger.info("Research run %s finished: %s (quality=%s)", run_id, status, quality_score)
        await self._safe_emit(
            run_id,
            "run",
            "failed" if status == "failed" else "completed",
            f"Research run finished: {status}.",
            payload={"terminal": True, "status": status, "quality_score": quality_score, "warnings": warnings},
        )

    async def _finish_canceled(self, ctx: RunContext) -> None:
        ctx.metrics.update({"phase": "canceled", "cancel_requested": True, "stop_reason": "canceled"})
        ctx.metrics["elapsed_seconds"] = round(ctx.elapsed(), 2)
        self.store.update_run(ctx.run_id, status="canceled", metrics=ctx.metrics, completed_at=utc_now_iso())
        logger.info("Research run %s canceled after %s sub-questions", ctx.run_id, len(ctx.completed))
        await self._safe_emit(
            ctx.run_id,
            "run",
            "completed",
            "Research run canceled.",
            payload={"terminal": True, "status": "canceled"},
        )

    async def _fail_run(self, ctx: RunContext, exc: Exception) -> None:
        reason = str(exc) or exc.__class__.__name__
        ctx.metrics.update({"phase": "failed", "failure_reason": reason})
        try:
            self.store.update_run(
                ctx.run_id,
                status="failed",
                error=reason,
                metrics=ctx.metrics,
                completed_at=utc_now_iso(),
            )
        except PersistenceError:
            logger.exception("Could not record failure of research run %s", ctx.run_id)
            return
        await self._safe_emit(
            ctx.run_id,
            "run",
            "failed",
            f"Research run failed: {reason}",
            payload={"terminal": True, "status": "failed"},
        )

    def _persist_metrics(self, ctx: RunContext) -> None:
        ctx.metrics["elapsed_seconds"] = round(ctx.elapsed(), 2)
        self.store.update_run(ctx.run_id, metrics=ctx.metrics)

    async def _safe_emit(
        self,
        run_id: str,
        stage: str,
        status: str,
        message: str,
        sub_question: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        try:
            event = self.store.append_event(
                run_id,
                stage=stage,
                status=status,
                message=message,
                sub_question=sub_question,
                payload=payload,
            )
        except PersistenceError as exc:
            logger.warning("Dropped %s/%s event for run %s: %s", stage, status, run_id, exc)
            return
        await self.bus.publish(run_id, event)
