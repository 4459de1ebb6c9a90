"""
Analysis Orchestrator

Drives an :class:`AnalysisRequest` from submission to a final,
interpreted result.

Pipeline
--------
``run`` first checks the result cache (a hit completes the request
straight from ``pending``), then executes five strictly sequential
stages:

1. **Intent analysis**   - ``analyzing``; JSON intent incl. complexity.
2. **Requirements**      - ``generating_code``; tables / columns / filters.
3. **Plan generation**   - model chosen by complexity tier; the
   steps are numbered from 1 and created only when execution reaches them.
4. **Step execution**    - ``executing``; per step: generate code,
   validate statically, run in the sandbox with a bounded wait.
5. **Interpretation**    - ``interpreting_results``; natural-language
   synthesis tailored to the user's technical level → ``completed``.

Any provider, validator or sandbox error fails the request with
``"<Stage> failed: <cause>"``.  Token usage and cost are recorded after
every AI call and survive failures.

Cancellation is cooperative: ``cancel`` flips the state under the
orchestrator's state lock and the running pipeline notices at its next
transition or checkpoint, after the current blocking call returns.

Every run captures the request's ``run_generation`` when it starts and
``retry`` bumps it, so a run that wakes up after its request was
cancelled and retried stops instead of writing into the new attempt.
Usage of a call that was in flight when the cancel landed is still
recorded.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, NamedTuple, Optional

import pydantic

from backend.app.config import PlatformSettings
from backend.app.engine.analysis_store import AnalysisStore
from backend.app.engine.code_validator import validate_code
from backend.app.engine.directory import EntityDirectory
from backend.app.engine.notifier import (
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from backend.app.engine.result_cache import ResultCache, cache_key
from backend.app.engine.sandbox import (
    SandboxExecutor,
    create_sandbox,
    describe_failure,
    table_name,
)
from backend.app.engine.state_machine import Trigger, apply_transition, can_transition
from backend.app.errors import (
    AnalysisPlatformError,
    ClarificationNeeded,
    NotFoundError,
    ProviderError,
    ResultNotReadyError,
    SandboxError,
    SandboxTimeoutError,
    StateTransitionError,
    ValidationError,
)
from backend.app.llm import prompts
from backend.app.llm.model_selector import ModelSelector, estimate_cost
from backend.app.llm.providers.base import Completion, ModelProvider, extract_json
from backend.app.llm.providers.registry import ProviderRegistry
from backend.app.schema.analysis_schema import (
    PROGRESS_BY_STATUS,
    AnalysisOptions,
    AnalysisPlan,
    AnalysisRequest,
    AnalysisStatus,
    AnalyzedIntent,
    CodeLanguage,
    DataRequirements,
    ExecutionStep,
    ResourceUsage,
    StageUsage,
    StatusReport,
    StepDescriptor,
    StepStatus,
    StepType,
    StepView,
    TaskType,
)
from backend.app.schema.cache_schema import CacheStatistics
from backend.app.schema.directory_schema import Dataset, User
from backend.app.schema.model_schema import SelectionConstraints, TokenEstimate

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 10
MAX_QUERY_LENGTH = 5000

CANCELLED_MESSAGE = "Analysis cancelled by user"

# Extra time the orchestrator waits for a sandbox that was told to stop.
_SANDBOX_GRACE_SECONDS = 5.0

# Previous-step output forwarded into the next step's prompt.
_MAX_PREVIOUS_OUTPUT_CHARS = 2000

DEFAULT_PLAN = AnalysisPlan(steps=[
    StepDescriptor(type=StepType.DATA_EXPLORATION, language=CodeLanguage.PYTHON,
                   description="Explore the dataset structure and basic statistics"),
    StepDescriptor(type=StepType.STATISTICAL_ANALYSIS, language=CodeLanguage.PYTHON,
                   description="Perform statistical analysis relevant to the question"),
    StepDescriptor(type=StepType.VISUALIZATION, language=CodeLanguage.PYTHON,
                   description="Create visualizations of the key findings"),
])

_STEP_TASKS = {
    StepType.MACHINE_LEARNING: TaskType.MACHINE_LEARNING,
    StepType.MODEL_EVALUATION: TaskType.MACHINE_LEARNING,
    StepType.VISUALIZATION: TaskType.VISUALIZATION,
    StepType.DATA_EXPLORATION: TaskType.DATA_EXPLORATION,
    StepType.DATA_CLEANING: TaskType.DATA_EXPLORATION,
    StepType.FEATURE_ENGINEERING: TaskType.DATA_EXPLORATION,
}

_STATUS_DESCRIPTIONS = {
    AnalysisStatus.PENDING: "Waiting to start",
    AnalysisStatus.ANALYZING: "Analyzing the question",
    AnalysisStatus.GENERATING_CODE: "Planning the analysis",
    AnalysisStatus.INTERPRETING_RESULTS: "Interpreting the results",
    AnalysisStatus.COMPLETED: "Analysis complete",
}


def task_for_step(step_type: StepType, language: CodeLanguage) -> TaskType:
    """Pipeline task whose model writes the code of a step."""
    if language == CodeLanguage.SQL:
        return TaskType.SQL_GENERATION
    return _STEP_TASKS.get(step_type, TaskType.CODE_GENERATION)


class AnalysisCancelled(Exception):
    """Raised inside a run once the request has been cancelled."""


class StepFailedError(AnalysisPlatformError):
    """An execution step ended in ``failed`` or ``timeout``."""


class _Run(NamedTuple):
    """One execution attempt of a request."""

    request: AnalysisRequest
    generation: int


class AnalysisOrchestrator:
    """Root of the analysis pipeline.

    Parameters
    ----------
    settings : PlatformSettings | None
        Policy constants (timeouts, cache, baseline model, ...).
    store : AnalysisStore | None
        Durable state; saved after every transition.
    directory : EntityDirectory | None
        Organisations, users, datasets and their connectors.
    cache : ResultCache | None
        Result cache checked at the start of ``run``.
    provider_factory : callable | None
        ``model_id -> ModelProvider``.  Defaults to a :class:`ProviderRegistry`.
    sandbox : SandboxExecutor | None
        Defaults to the backend selected by ``settings.sandbox_backend``.
    notifier : NotificationSink | None
        Told about completions and failures.
    dispatcher : callable | None
        ``request_id -> None``; hands submitted / retried requests to
        the worker pool.  ``None`` leaves scheduling to the caller.

    Usage::

        orchestrator = AnalysisOrchestrator(settings, dispatcher=queue.enqueue)
        request = orchestrator.submit("What is the average order value by region?", 7, 3, 1)
        ...
        orchestrator.get_status(request.id).progress_percent
    """

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        store: Optional[AnalysisStore] = None,
        directory: Optional[EntityDirectory] = None,
        cache: Optional[ResultCache] = None,
        provider_factory: Optional[Callable[[str], ModelProvider]] = None,
        sandbox: Optional[SandboxExecutor] = None,
        notifier: Optional[NotificationSink] = None,
        dispatcher: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.settings = settings or PlatformSettings()
        self.store = store or AnalysisStore()
        self.directory = directory or EntityDirectory()
        self.cache = cache or ResultCache(self.settings, self.directory)
        self._is_supported: Optional[Callable[[str], bool]] = None
        if provider_factory is None:
            registry = ProviderRegistry(self.settings)
            provider_factory = registry.get
            self._is_supported = registry.supports
        self._provider_factory = provider_factory
        self.sandbox = sandbox or create_sandbox(self.settings)
        self.notifier = notifier or LoggingNotificationSink()
        self.dispatcher = dispatcher

        self._state_lock = threading.RLock()
        self._inflight: dict[str, threading.Lock] = {}
        self._inflight_guard = threading.Lock()
        self._active_tokens: dict[str, str] = {}
        self._sandbox_pool = ThreadPoolExecutor(
            max_workers=self.settings.worker_count, thread_name_prefix="sandbox",
        )

    # ── Produced interface ───────────────────────────────────────

    def submit(
        self,
        query: str,
        dataset_id: int,
        org_id: int,
        user_id: int,
        options: Optional[AnalysisOptions] = None,
    ) -> AnalysisRequest:
        """Validate and persist a new ``pending`` request, then dispatch it."""
        text = (query or "").strip()
        if len(text) < MIN_QUERY_LENGTH:
            raise ValidationError(
                f"Query must be at least {MIN_QUERY_LENGTH} characters long."
            )
        if len(text) > MAX_QUERY_LENGTH:
            raise ValidationError(
                f"Query must be at most {MAX_QUERY_LENGTH} characters long."
            )

        try:
            self.directory.get_organization(org_id)
            dataset = self.directory.get_dataset(dataset_id)
            user = self.directory.get_user(user_id)
        except NotFoundError as exc:
            raise ValidationError(str(exc)) from exc
        if dataset.organization_id != org_id:
            raise ValidationError(
                f"Dataset '{dataset_id}' does not belong to organization '{org_id}'."
            )
        if user.organization_id != org_id:
            raise ValidationError(
                f"User '{user_id}' is not a member of organization '{org_id}'."
            )

        request = AnalysisRequest(
            id=str(uuid.uuid4()),
            query=text,
            dataset_id=dataset_id,
            organization_id=org_id,
            user_id=user_id,
            options=options or AnalysisOptions(),
        )
        self.store.save(request)
        logger.info(
            "Analysis %s submitted by user %s on dataset %s: %s",
            request.id, user_id, dataset_id, text[:100],
        )
        self._dispatch(request.id)
        return request

    def run(self, request_id: str) -> AnalysisRequest:
        """Execute the whole pipeline for a ``pending`` request."""
        with self._state_lock:
            request = self._get_or_raise(request_id)
            if request.status != AnalysisStatus.PENDING:
                logger.warning(
                    "Analysis %s is '%s', not pending; run skipped.",
                    request_id, request.status.value,
                )
                return request
            run = _Run(request, request.metadata.run_generation)

        if self._complete_from_cache(request):
            return request

        if self.settings.dedupe_in_flight:
            with self._inflight_lock(cache_key(request.query, request.dataset_id)):
                # Someone may have computed it while we waited.
                if not self._complete_from_cache(request):
                    self._run_pipeline(run)
        else:
            self._run_pipeline(run)
        return request

    def cancel(self, request_id: str) -> AnalysisRequest:
        """Cancel an analysis that is still analyzing or generating code."""
        with self._state_lock:
            request = self._get_or_raise(request_id)
            if not can_transition(request.status, Trigger.CANCEL):
                raise StateTransitionError(request.status.value, Trigger.CANCEL.value)
            apply_transition(request, Trigger.CANCEL)
            request.error_message = CANCELLED_MESSAGE
            request.metadata.cancelled = True
            self.store.save(request)
        self._notify(request, NotificationEvent.FAILED)
        return request

    def retry(self, request_id: str) -> AnalysisRequest:
        """Return a failed or clarification-pending request to ``pending``."""
        with self._state_lock:
            request = self._get_or_raise(request_id)
            apply_transition(request, Trigger.RETRY)
            request.error_message = None
            request.clarification_question = None
            request.final_result = None
            request.analyzed_intent = None
            request.complexity_score = None
            request.data_requirements = None
            request.plan = None
            request.metadata.cancelled = False
            request.metadata.cache_hit = False
            request.metadata.retry_count += 1
            request.metadata.run_generation += 1
            self.store.clear_steps(request_id)
            self.store.save(request)
        logger.info("Analysis %s queued for retry #%d.", request_id, request.metadata.retry_count)
        self._dispatch(request_id)
        return request

    def get_status(self, request_id: str) -> StatusReport:
        request = self._get_or_raise(request_id)
        steps = self.store.get_steps(request_id)
        return StatusReport(
            request_id=request.id,
            status=request.status,
            progress_percent=PROGRESS_BY_STATUS[request.status],
            current_step_description=self._current_description(request, steps),
            steps=[
                StepView(
                    sequence_number=s.sequence_number,
                    step_type=s.step_type,
                    language=s.language,
                    description=s.description,
                    status=s.status,
                    error_message=s.error_message,
                    duration_seconds=s.duration_seconds,
                )
                for s in steps
            ],
            error_message=request.error_message,
            clarification_question=request.clarification_question,
            complexity_score=request.complexity_score,
            total_steps=len(request.plan.steps) if request.plan else None,
            created_at=request.created_at,
            completed_at=request.completed_at,
        )

    def get_result(self, request_id: str) -> AnalysisRequest:
        """Return a completed request; raises ``ResultNotReadyError`` otherwise."""
        request = self._get_or_raise(request_id)
        if request.status != AnalysisStatus.COMPLETED:
            raise ResultNotReadyError(
                f"Analysis '{request_id}' has no result yet (status: {request.status.value})."
            )
        return request

    def invalidate_dataset_cache(self, dataset_id: int) -> int:
        return self.cache.invalidate(dataset_id)

    def selector_for(self, user: User) -> ModelSelector:
        """Model selector scoped to *user*'s tier and organisation allow-list."""
        return ModelSelector(
            user,
            self.directory.get_organization(user.organization_id),
            self.settings,
            is_supported=self._is_supported,
        )

    def cache_statistics(self, org_id: int) -> CacheStatistics:
        return self.cache.statistics(org_id)

    def shutdown(self) -> None:
        """Kill in-flight sandbox runs and stop the sandbox pool."""
        with self._state_lock:
            tokens = list(self._active_tokens.values())
        for token in tokens:
            self.sandbox.cancel(token)
        self._sandbox_pool.shutdown(wait=False)

    # ── Pipeline ─────────────────────────────────────────────────

    def _run_pipeline(self, run: _Run) -> None:
        request = run.request
        stage = "Intent analysis"
        try:
            user = self.directory.get_user(request.user_id)
            dataset = self.directory.get_dataset(request.dataset_id)
            selector = self.selector_for(user)
            constraints = SelectionConstraints(
                preferred_model=request.options.preferred_model,
                max_cost=request.options.max_cost,
            )

            self._transition(run, Trigger.START_ANALYSIS)
            self._analyze_intent(run, dataset, selector, constraints)

            stage = "Requirements analysis"
            schema = self._analyze_requirements(run, dataset, selector, constraints)

            stage = "Plan generation"
            plan = self._generate_plan(run, selector, constraints)

            stage = "Step execution"
            self._transition(run, Trigger.EXECUTE_CODE)
            outputs = self._execute_steps(run, plan, dataset, schema, selector, constraints)

            stage = "Interpretation"
            self._transition(run, Trigger.INTERPRET_RESULTS)
            self._interpret(run, user, outputs, selector, constraints)
        except AnalysisCancelled:
            logger.info("Analysis %s stopped after cancellation.", request.id)
        except ClarificationNeeded as exc:
            self._request_clarification(run, exc)
        except Exception as exc:
            if not isinstance(exc, AnalysisPlatformError):
                logger.exception("Unexpected error in %s for analysis %s.", stage, request.id)
            self._fail(run, f"{stage} failed: {exc}")

    def _analyze_intent(self, run: _Run, dataset: Dataset, selector, constraints) -> None:
        request = run.request
        model = selector.select_for_task(TaskType.INTENT_ANALYSIS, constraints)
        completion = self._provider(model).generate_completion(
            prompts.INTENT_ANALYSIS_PROMPT.format(
                query=request.query,
                dataset_name=dataset.name,
                dataset_description=dataset.description or "n/a",
            ),
            system=prompts.INTENT_ANALYSIS_SYSTEM,
            temperature=0.1,
        )
        self._record_usage(run, "intent_analysis", TaskType.INTENT_ANALYSIS, completion)

        intent = self._parse_intent(completion.content)
        request.analyzed_intent = intent
        if intent.needs_clarification:
            raise ClarificationNeeded(
                "The question needs clarification before it can be analysed.",
                intent.clarification_needed,
            )
        request.complexity_score = intent.complexity_score
        logger.info(
            "Analysis %s intent: %s (complexity %d).",
            request.id, intent.query_type, intent.complexity_score,
        )
        self._transition(run, Trigger.GENERATE_CODE)

    def _analyze_requirements(self, run: _Run, dataset: Dataset, selector, constraints) -> dict:
        request = run.request
        schema = self._dataset_schema(dataset)
        model = selector.select_for_task(TaskType.DATA_EXPLORATION, constraints)
        completion = self._provider(model).analyze_data_requirements(request.query, schema)
        self._record_usage(run, "requirements_analysis", TaskType.DATA_EXPLORATION, completion)

        request.data_requirements = DataRequirements.model_validate(completion.parsed or {})
        self._checkpoint(run)
        return schema

    def _generate_plan(self, run: _Run, selector, constraints) -> AnalysisPlan:
        request = run.request
        model = selector.select_by_complexity(request.complexity_score or 5, constraints)
        intent = request.analyzed_intent or AnalyzedIntent()
        completion = self._provider(model).generate_completion(
            prompts.PLAN_PROMPT.format(
                query=request.query,
                objective=intent.main_objective or request.query,
                complexity=request.complexity_score,
                requirements_json=json.dumps(
                    request.data_requirements.model_dump() if request.data_requirements else {},
                    indent=2,
                ),
            ),
            system=prompts.PLAN_SYSTEM,
            temperature=0.2,
        )
        self._record_usage(run, "plan_generation", TaskType.CODE_GENERATION, completion)

        request.plan = self._parse_plan(completion.content)
        self._checkpoint(run)
        logger.info("Analysis %s planned %d step(s).", request.id, len(request.plan.steps))
        return request.plan

    def _execute_steps(
        self,
        run: _Run,
        plan: AnalysisPlan,
        dataset: Dataset,
        schema: dict[str, Any],
        selector: ModelSelector,
        constraints: SelectionConstraints,
    ) -> list[dict[str, Any]]:
        """Create and run one step per plan entry; the first failure stops the loop."""
        datasets = {dataset.name: dataset.location} if dataset.location else {}
        outputs: list[dict[str, Any]] = []
        for number, descriptor in enumerate(plan.steps, start=1):
            with self._state_lock:
                self._ensure_current(run)
                step = self.store.add_step(ExecutionStep(
                    id=str(uuid.uuid4()),
                    request_id=run.request.id,
                    sequence_number=number,
                    step_type=descriptor.type,
                    language=descriptor.language,
                    description=descriptor.description,
                ))
            self._run_step(run, step, datasets, schema, outputs, selector, constraints)
            outputs.append(self._step_output(step))
        return outputs

    def _run_step(self, run: _Run, step: ExecutionStep, datasets, schema, outputs, selector, constraints) -> None:
        request = run.request
        label = f"step {step.sequence_number} ({step.step_type.value})"
        task = task_for_step(step.step_type, step.language)
        step.model_used = selector.select_for_task(task, constraints)
        self._set_step_status(run, step, StepStatus.GENERATING)

        try:
            completion = self._provider(step.model_used).generate_code(
                prompts.STEP_TASK_TEMPLATE.format(
                    sequence_number=step.sequence_number,
                    step_type=step.step_type.value,
                    description=step.description,
                    query=request.query,
                    datasets=", ".join(table_name(n) for n in datasets) or "(none)",
                    schema_json=json.dumps(schema, default=str),
                    previous_outputs=self._previous_outputs(outputs),
                ),
                step.language.value,
            )
        except Exception as exc:
            if not isinstance(exc, ProviderError):
                logger.exception("Unexpected error generating code for %s of analysis %s.", label, request.id)
            self._finish_step(run, step, StepStatus.FAILED, f"Code generation failed: {exc}")
            raise StepFailedError(f"{label} code generation failed: {exc}") from exc
        self._record_usage(
            run, f"step_{step.sequence_number}", task, completion,
            selection_key=f"step_{step.sequence_number}:{task.value}",
        )
        step.generated_code = completion.content

        self._set_step_status(run, step, StepStatus.VALIDATING)
        validation = validate_code(step.language, step.generated_code)
        if not validation.valid:
            self._finish_step(run, step, StepStatus.FAILED, validation.message)
            raise StepFailedError(f"{label} failed static validation: {validation.message}")

        step.started_at = datetime.now(timezone.utc)
        self._set_step_status(run, step, StepStatus.EXECUTING)
        result = self._run_in_sandbox(run, step, datasets, label)

        step.resource_usage = ResourceUsage(
            wall_time_ms=result.wall_time_ms,
            cpu_time_ms=result.cpu_time_ms,
            max_rss_mb=result.max_rss_mb,
        )
        step.artifacts = result.artifacts
        step.result_data = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
            "truncated": result.truncated,
            "output": extract_json(result.stdout) if result.stdout.strip() else None,
        }
        if result.timed_out:
            self._finish_step(run, step, StepStatus.TIMEOUT, describe_failure(result))
            raise StepFailedError(f"{label} timed out after {self.settings.step_timeout_seconds:g}s")
        if not result.success:
            reason = describe_failure(result)
            self._finish_step(run, step, StepStatus.FAILED, reason)
            raise StepFailedError(f"{label} failed: {reason}")
        self._finish_step(run, step, StepStatus.COMPLETED)

    def _run_in_sandbox(self, run: _Run, step: ExecutionStep, datasets, label: str):
        request_id = run.request.id
        timeout = self.settings.step_timeout_seconds
        with self._state_lock:
            self._active_tokens[request_id] = step.id
        try:
            future = self._sandbox_pool.submit(
                self.sandbox.run_code, step.language, step.generated_code, datasets, timeout, step.id,
            )
            return future.result(timeout=timeout + _SANDBOX_GRACE_SECONDS)
        except FutureTimeout:
            self.sandbox.cancel(step.id)
            self._finish_step(run, step, StepStatus.TIMEOUT, "execution timed out")
            raise StepFailedError(f"{label} timed out after {timeout:g}s") from None
        except SandboxTimeoutError as exc:
            self._finish_step(run, step, StepStatus.TIMEOUT, str(exc))
            raise StepFailedError(f"{label} timed out: {exc}") from exc
        except (SandboxError, ValidationError) as exc:
            self._finish_step(run, step, StepStatus.FAILED, str(exc))
            raise StepFailedError(f"{label} failed: {exc}") from exc
        except Exception as exc:
            logger.exception("Sandbox error in %s of analysis %s.", label, request_id)
            self._finish_step(run, step, StepStatus.FAILED, f"sandbox error: {exc}")
            raise StepFailedError(f"{label} failed: sandbox error: {exc}") from exc
        finally:
            with self._state_lock:
                self._active_tokens.pop(request_id, None)

    def _interpret(self, run: _Run, user: User, outputs, selector, constraints) -> None:
        request = run.request
        model = selector.select_for_task(TaskType.RESULT_INTERPRETATION, constraints)
        completion = self._provider(model).interpret_results(
            outputs, request.query, user.technical_level.value,
        )
        self._record_usage(run, "interpretation", TaskType.RESULT_INTERPRETATION, completion)
        text = completion.content.strip()
        if not text:
            raise ProviderError("the model returned an empty interpretation")

        started = request.started_at or request.created_at
        request.final_result = {
            "query": request.query,
            "interpretation": text,
            "detailed_results": outputs,
            "execution_time": round((datetime.now(timezone.utc) - started).total_seconds(), 3),
            "models_used": dict(request.metadata.selected_models),
            "total_cost": round(request.metadata.total_cost, 6),
            "row_count": self._row_count(outputs),
        }
        self.cache.store(
            request.query,
            request.dataset_id,
            request.organization_id,
            request.final_result,
            {"request_id": request.id, "user_id": request.user_id,
             "models": dict(request.metadata.selected_models)},
        )
        self._transition(run, Trigger.COMPLETE)
        self._notify(request, NotificationEvent.COMPLETED)

    # ── State helpers ────────────────────────────────────────────
    # Every write made on behalf of a run goes through one of these and
    # is refused once the run is stale.

    def _transition(self, run: _Run, trigger: Trigger) -> None:
        with self._state_lock:
            self._ensure_current(run)
            apply_transition(run.request, trigger)
            self.store.save(run.request)

    def _checkpoint(self, run: _Run) -> None:
        """Persist progress; abort if a cancel landed during the last call."""
        with self._state_lock:
            self._ensure_current(run)
            self.store.save(run.request)

    @staticmethod
    def _is_current(run: _Run) -> bool:
        meta = run.request.metadata
        return not meta.cancelled and meta.run_generation == run.generation

    def _ensure_current(self, run: _Run) -> None:
        if not self._is_current(run):
            raise AnalysisCancelled(run.request.id)

    def _complete_from_cache(self, request: AnalysisRequest) -> bool:
        if request.options.skip_cache:
            return False
        cached, hit = self.cache.lookup(request.query, request.dataset_id, request.organization_id)
        if not hit:
            return False
        with self._state_lock:
            if request.status != AnalysisStatus.PENDING:
                return False
            request.final_result = cached
            request.metadata.cache_hit = True
            apply_transition(request, Trigger.COMPLETE_FROM_CACHE)
            self.store.save(request)
        logger.info("Analysis %s served from cache.", request.id)
        self._notify(request, NotificationEvent.COMPLETED)
        return True

    def _request_clarification(self, run: _Run, exc: ClarificationNeeded) -> None:
        request = run.request
        with self._state_lock:
            if not self._is_current(run):
                return
            request.clarification_question = exc.question or str(exc)
            apply_transition(request, Trigger.REQUEST_CLARIFICATION)
            self.store.save(request)
        logger.info("Analysis %s needs clarification: %s", request.id, request.clarification_question)

    def _fail(self, run: _Run, message: str) -> None:
        request = run.request
        with self._state_lock:
            if not self._is_current(run) or not can_transition(request.status, Trigger.FAIL):
                logger.warning("Analysis %s not failed (status %s): %s",
                               request.id, request.status.value, message)
                return
            request.error_message = message
            apply_transition(request, Trigger.FAIL)
            self.store.save(request)
        logger.error("Analysis %s failed: %s", request.id, message)
        self._notify(request, NotificationEvent.FAILED)

    def _set_step_status(self, run: _Run, step: ExecutionStep, status: StepStatus) -> None:
        with self._state_lock:
            self._ensure_current(run)
            step.status = status
            self.store.save_step(step)

    def _finish_step(self, run: _Run, step: ExecutionStep, status: StepStatus, error: str | None = None) -> None:
        with self._state_lock:
            self._ensure_current(run)
            step.status = status
            step.error_message = error
            step.completed_at = datetime.now(timezone.utc)
            self.store.save_step(step)
        logger.info(
            "Step %d of analysis %s finished: %s%s",
            step.sequence_number, step.request_id, status.value,
            f" ({error})" if error else "",
        )

    # ── Misc helpers ─────────────────────────────────────────────

    def _get_or_raise(self, request_id: str) -> AnalysisRequest:
        request = self.store.get(request_id)
        if request is None:
            raise NotFoundError(f"Analysis '{request_id}' not found.")
        return request

    def _dispatch(self, request_id: str) -> None:
        if self.dispatcher is not None:
            self.dispatcher(request_id)

    def _provider(self, model: str) -> ModelProvider:
        return self._provider_factory(model)

    @contextmanager
    def _inflight_lock(self, key: str) -> Iterator[None]:
        with self._inflight_guard:
            lock = self._inflight.setdefault(key, threading.Lock())
        with lock:
            yield

    def _record_usage(
        self,
        run: _Run,
        stage: str,
        task: TaskType,
        completion: Completion,
        selection_key: str | None = None,
    ) -> None:
        """Add a call's tokens and cost, then abort if the run was cancelled."""
        request = run.request
        cost = estimate_cost(
            completion.model,
            TokenEstimate(input=completion.input_tokens, output=completion.output_tokens),
        ).total_cost
        with self._state_lock:
            if request.metadata.run_generation != run.generation:
                raise AnalysisCancelled(request.id)
            request.metadata.record(StageUsage(
                stage=stage,
                task=task,
                model=completion.model,
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                cost=cost,
            ))
            request.metadata.selected_models[selection_key or task.value] = completion.model
            self.store.save(request)
            self._ensure_current(run)

    def _notify(self, request: AnalysisRequest, event: NotificationEvent) -> None:
        safe_notify(self.notifier, request.user_id, event, {
            "request_id": request.id,
            "status": request.status.value,
            "error_message": request.error_message,
        })

    def _dataset_schema(self, dataset: Dataset) -> dict[str, Any]:
        connector = self.directory.get_connector(dataset.id)
        if connector is not None:
            return connector.fetch_schema()
        return dict(dataset.schema_metadata)

    @staticmethod
    def _parse_intent(text: str) -> AnalyzedIntent:
        parsed = extract_json(text)
        if not isinstance(parsed, dict):
            logger.warning("Could not parse intent response as JSON; using a neutral intent.")
            return AnalyzedIntent()
        try:
            return AnalyzedIntent.model_validate(parsed)
        except pydantic.ValidationError as exc:
            logger.warning("Intent response did not validate (%s); using a neutral intent.", exc)
            return AnalyzedIntent()

    @staticmethod
    def _parse_plan(text: str) -> AnalysisPlan:
        parsed = extract_json(text)
        if isinstance(parsed, dict):
            parsed = parsed.get("steps")
        if not isinstance(parsed, list) or not parsed:
            logger.warning("Could not parse plan response; using the default plan.")
            return DEFAULT_PLAN
        try:
            return AnalysisPlan(steps=[
                item if isinstance(item, dict) else {"description": str(item)}
                for item in parsed
            ])
        except pydantic.ValidationError as exc:
            languages = ", ".join(lang.value for lang in CodeLanguage)
            raise ValidationError(
                f"Plan contains an unsupported step (allowed languages: {languages}): "
                f"{exc.errors()[0].get('msg', exc)}"
            ) from exc

    @staticmethod
    def _step_output(step: ExecutionStep) -> dict[str, Any]:
        data = step.result_data or {}
        return {
            "sequence_number": step.sequence_number,
            "step_type": step.step_type.value,
            "language": step.language.value,
            "description": step.description,
            "output": data.get("output"),
            "stdout": data.get("stdout", ""),
            "artifacts": [a.model_dump() for a in step.artifacts],
        }

    @staticmethod
    def _previous_outputs(outputs: list[dict[str, Any]]) -> str:
        if not outputs:
            return "(none)"
        lines = []
        for out in outputs:
            text = out.get("stdout") or ""
            if len(text) > _MAX_PREVIOUS_OUTPUT_CHARS:
                text = text[:_MAX_PREVIOUS_OUTPUT_CHARS] + "...(truncated)"
            files = ", ".join(a["name"] for a in out.get("artifacts", [])) or "none"
            lines.append(f"Step {out['sequence_number']} output (files: {files}):\n{text}")
        return "\n\n".join(lines)

    @staticmethod
    def _row_count(outputs: list[dict[str, Any]]) -> int:
        counts = [len(o["output"]) for o in outputs if isinstance(o.get("output"), list)]
        return max(counts) if counts else 0

    @staticmethod
    def _current_description(request: AnalysisRequest, steps: list[ExecutionStep]) -> Optional[str]:
        if request.status == AnalysisStatus.EXECUTING:
            for step in steps:
                if not step.is_terminal:
                    return f"Step {step.sequence_number}: {step.description}"
        if request.status == AnalysisStatus.REQUIRES_CLARIFICATION:
            return request.clarification_question
        return _STATUS_DESCRIPTIONS.get(request.status)
