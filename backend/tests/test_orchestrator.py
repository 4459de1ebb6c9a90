"""
Tests for the Analysis Orchestrator

Drives full pipeline runs against a scripted provider and a fake
sandbox: happy path, fail-fast step failures, cooperative cancellation,
cache hits, clarification / retry, and submission validation.
"""

from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock

import pytest

from backend.app.engine import orchestrator as orchestrator_module
from backend.app.engine.notifier import NotificationEvent
from backend.app.errors import (
    NotFoundError,
    ProviderTimeoutError,
    ResultNotReadyError,
    StateTransitionError,
    ValidationError,
)
from backend.app.schema.analysis_schema import (
    AnalysisOptions,
    AnalysisStatus,
    StepStatus,
    StepType,
)
from backend.app.schema.sandbox_schema import SandboxResult
from backend.tests.fakes import (
    DATASET_ID,
    INTERPRETATION,
    ORG_ID,
    OTHER_DATASET_ID,
    OTHER_USER_ID,
    QUERY,
    USER_ID,
)

BAD_CODE = "```python\nimport os\nos.listdir('/')\n```"
THREE_STEP_PLAN = json.dumps([
    {"type": "data_exploration", "language": "python", "description": "Inspect orders"},
    {"type": "statistical_analysis", "language": "python", "description": "Average by region"},
    {"type": "visualization", "language": "python", "description": "Bar chart"},
])


def _submit(orchestrator, query: str = QUERY, **options):
    return orchestrator.submit(
        query, DATASET_ID, ORG_ID, USER_ID, options=AnalysisOptions(**options),
    )


def _run(orchestrator, **options):
    request = _submit(orchestrator, **options)
    return orchestrator.run(request.id)


# Happy path

class TestSuccessfulRun:
    def test_completes_with_result(self, orchestrator, notifier):
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.COMPLETED
        assert request.error_message is None
        assert request.completed_at is not None

        result = request.final_result
        assert result["query"] == QUERY
        assert result["interpretation"] == INTERPRETATION
        assert len(result["detailed_results"]) == 2
        assert result["detailed_results"][1]["output"] == [{"region": "EU", "avg": 12.5}]
        assert result["row_count"] == 1
        assert set(result) >= {"execution_time", "models_used", "total_cost"}
        assert notifier.events[-1][:2] == (USER_ID, NotificationEvent.COMPLETED)

    def test_stages_run_in_order(self, orchestrator, provider):
        _run(orchestrator)
        assert provider.stages() == [
            "intent", "requirements", "plan", "code", "code", "interpretation",
        ]

    def test_steps_numbered_and_completed(self, orchestrator, sandbox):
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert [s.sequence_number for s in steps] == [1, 2]
        assert [s.step_type for s in steps] == [
            StepType.DATA_EXPLORATION, StepType.STATISTICAL_ANALYSIS,
        ]
        for step in steps:
            assert step.status == StepStatus.COMPLETED
            assert step.started_at is not None
            assert step.generated_code.startswith("import json")
            assert step.resource_usage.wall_time_ms == 12
        assert len(sandbox.runs) == 2
        assert sandbox.runs[0]["datasets"] == {"orders": "/data/orders.csv"}
        assert sandbox.runs[0]["token"] == steps[0].id

    def test_usage_recorded_per_ai_call(self, orchestrator):
        request = _run(orchestrator)
        meta = request.metadata
        assert len(meta.stages) == 6
        assert meta.input_tokens == 600
        assert meta.output_tokens == 300
        assert meta.total_cost > 0
        assert "intent_analysis" in meta.selected_models
        assert "step_2:code_generation" in meta.selected_models

    def test_complexity_and_requirements_stored(self, orchestrator):
        request = _run(orchestrator)
        assert request.complexity_score == 4
        assert request.data_requirements.tables_needed == ["orders"]
        assert "orders.region" in request.data_requirements.columns_needed

    def test_step_prompt_carries_schema_and_previous_output(self, orchestrator, provider):
        _run(orchestrator)
        code_prompts = [p for stage, p in provider.calls if stage == "code"]
        assert "order_id" in code_prompts[0]
        assert "Outputs of previous steps:\n(none)" in code_prompts[0]
        assert "Step 1 output" in code_prompts[1]

    def test_result_is_cached(self, orchestrator, cache):
        _run(orchestrator)
        entry = cache.get_entry(QUERY, DATASET_ID)
        assert entry is not None
        assert entry.result["interpretation"] == INTERPRETATION

    def test_status_and_result_views(self, orchestrator):
        request = _run(orchestrator)
        status = orchestrator.get_status(request.id)
        assert status.progress_percent == 100
        assert status.total_steps == 2
        assert len(status.steps) == 2
        assert orchestrator.get_result(request.id).final_result == request.final_result

    def test_unparseable_plan_uses_default_plan(self, orchestrator, provider):
        provider.replies["plan"] = "I would explore, then analyse, then plot."
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert request.status == AnalysisStatus.COMPLETED
        assert [s.step_type for s in steps] == [
            StepType.DATA_EXPLORATION, StepType.STATISTICAL_ANALYSIS, StepType.VISUALIZATION,
        ]

    def test_unparseable_intent_uses_neutral_intent(self, orchestrator, provider):
        provider.replies["intent"] = "not json at all"
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.COMPLETED
        assert request.complexity_score == 5


# Failures

class TestFailures:
    def test_step_validation_failure_aborts_run(self, orchestrator, provider, sandbox, notifier):
        provider.replies["plan"] = THREE_STEP_PLAN
        provider.replies["code"] = [
            "```python\nprint('ok')\n```",
            BAD_CODE,
        ]
        request = _run(orchestrator)

        assert request.status == AnalysisStatus.FAILED
        assert "step 2" in request.error_message
        assert "static validation" in request.error_message
        steps = orchestrator.store.get_steps(request.id)
        assert [s.sequence_number for s in steps] == [1, 2]
        assert steps[0].status == StepStatus.COMPLETED
        assert steps[1].status == StepStatus.FAILED
        assert "Forbidden import 'os'" in steps[1].error_message
        assert len(sandbox.runs) == 1
        assert notifier.events[-1][1] == NotificationEvent.FAILED

    def test_provider_error_names_stage(self, orchestrator, provider):
        provider.replies["intent"] = ProviderTimeoutError("request timed out")
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.FAILED
        assert request.error_message == "Intent analysis failed: request timed out"

    def test_usage_kept_on_late_failure(self, orchestrator, provider):
        provider.replies["interpretation"] = RuntimeError("rate limit exceeded")
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.FAILED
        assert request.error_message.startswith("Interpretation failed:")
        assert len(request.metadata.stages) == 5
        assert request.metadata.total_cost > 0

    def test_empty_interpretation_fails(self, orchestrator, provider):
        provider.replies["interpretation"] = "   "
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.FAILED
        assert "empty interpretation" in request.error_message

    def test_nonzero_exit_fails_step(self, orchestrator, sandbox):
        sandbox.results = [SandboxResult(
            success=False, exit_code=1, stderr="Traceback...\nZeroDivisionError: division by zero",
        )]
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert request.status == AnalysisStatus.FAILED
        assert len(steps) == 1
        assert steps[0].status == StepStatus.FAILED
        assert "ZeroDivisionError" in steps[0].error_message
        assert "step 1 (data_exploration) failed: exit code 1" in request.error_message

    def test_sandbox_timeout_marks_step_timeout(self, orchestrator, sandbox):
        sandbox.results = [SandboxResult(success=False, exit_code=-9, timed_out=True)]
        request = _run(orchestrator)
        step = orchestrator.store.get_steps(request.id)[0]
        assert request.status == AnalysisStatus.FAILED
        assert step.status == StepStatus.TIMEOUT
        assert "timed out" in request.error_message

    def test_unresponsive_sandbox_is_cancelled(self, orchestrator, sandbox, monkeypatch):
        monkeypatch.setattr(orchestrator_module, "_SANDBOX_GRACE_SECONDS", 0.0)
        orchestrator.settings.step_timeout_seconds = 0.2
        sandbox.gate = threading.Event()

        request = _run(orchestrator)
        step = orchestrator.store.get_steps(request.id)[0]
        assert request.status == AnalysisStatus.FAILED
        assert step.status == StepStatus.TIMEOUT
        assert sandbox.cancelled == [step.id]

    def test_sandbox_os_error_fails_step(self, orchestrator, sandbox, monkeypatch):
        monkeypatch.setattr(sandbox, "run_code", MagicMock(side_effect=OSError("No space left on device")))
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert request.status == AnalysisStatus.FAILED
        assert [(s.sequence_number, s.status) for s in steps] == [(1, StepStatus.FAILED)]
        assert "No space left on device" in steps[0].error_message
        assert request.error_message.startswith("Step execution failed: step 1")

    def test_sandbox_pool_shut_down_fails_step(self, orchestrator):
        orchestrator.shutdown()
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert request.status == AnalysisStatus.FAILED
        assert [s.status for s in steps] == [StepStatus.FAILED]

    def test_unexpected_code_generation_error_fails_step(self, orchestrator, provider, monkeypatch):
        monkeypatch.setattr(provider, "generate_code", MagicMock(side_effect=KeyError("language")))
        request = _run(orchestrator)
        steps = orchestrator.store.get_steps(request.id)
        assert request.status == AnalysisStatus.FAILED
        assert [s.status for s in steps] == [StepStatus.FAILED]
        assert steps[0].error_message.startswith("Code generation failed:")

    def test_unsupported_plan_language_fails(self, orchestrator, provider):
        provider.replies["plan"] = json.dumps([
            {"type": "data_exploration", "language": "javascript", "description": "x"},
        ])
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.FAILED
        assert request.error_message.startswith("Plan generation failed:")
        assert orchestrator.store.get_steps(request.id) == []


# Cancellation

class TestCancel:
    def test_cancel_while_generating_code(self, orchestrator, provider, sandbox, notifier):
        request = _submit(orchestrator)
        provider.hooks["plan"] = lambda: orchestrator.cancel(request.id)

        orchestrator.run(request.id)

        assert request.status == AnalysisStatus.FAILED
        assert request.error_message == "Analysis cancelled by user"
        assert request.metadata.cancelled is True
        assert sandbox.runs == []
        assert orchestrator.store.get_steps(request.id) == []
        assert [e[1] for e in notifier.events] == [NotificationEvent.FAILED]

    def test_cancel_twice_raises(self, orchestrator, provider):
        request = _submit(orchestrator)
        provider.hooks["requirements"] = lambda: orchestrator.cancel(request.id)
        orchestrator.run(request.id)

        with pytest.raises(StateTransitionError):
            orchestrator.cancel(request.id)
        assert request.error_message == "Analysis cancelled by user"

    def test_cancelled_run_stays_out_of_retry(self, orchestrator, provider, sandbox):
        request = _submit(orchestrator)
        entered = threading.Event()
        release = threading.Event()
        blocked = []

        def block_first_intent_call():
            if not blocked:
                blocked.append(True)
                entered.set()
                release.wait(5)

        provider.hooks["intent"] = block_first_intent_call
        stale = threading.Thread(target=orchestrator.run, args=(request.id,))
        stale.start()
        assert entered.wait(5)

        orchestrator.cancel(request.id)
        orchestrator.retry(request.id)
        orchestrator.run(request.id)
        assert request.status == AnalysisStatus.COMPLETED

        release.set()
        stale.join(5)
        assert not stale.is_alive()
        assert request.status == AnalysisStatus.COMPLETED
        assert request.error_message is None
        assert provider.stages().count("intent") == 2
        assert provider.stages().count("requirements") == 1
        assert [u.stage for u in request.metadata.stages].count("intent_analysis") == 1
        assert len(sandbox.runs) == 2

    def test_cancel_keeps_usage_of_call_in_flight(self, orchestrator, provider):
        request = _submit(orchestrator)
        provider.hooks["requirements"] = lambda: orchestrator.cancel(request.id)
        orchestrator.run(request.id)
        assert [u.stage for u in request.metadata.stages] == [
            "intent_analysis", "requirements_analysis",
        ]

    def test_cancel_pending_rejected(self, orchestrator):
        request = _submit(orchestrator)
        with pytest.raises(StateTransitionError):
            orchestrator.cancel(request.id)
        assert request.status == AnalysisStatus.PENDING

    def test_cancel_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.cancel("missing")


# Cache

class TestCacheHit:
    def test_second_identical_query_served_from_cache(self, orchestrator, provider, notifier):
        first = _run(orchestrator)
        calls = len(provider.calls)

        second = _run(orchestrator, query="  what is the AVERAGE order value by region?  ".strip())
        assert second.status == AnalysisStatus.COMPLETED
        assert second.metadata.cache_hit is True
        assert second.final_result == first.final_result
        assert len(provider.calls) == calls
        assert orchestrator.store.get_steps(second.id) == []
        assert notifier.events[-1][1] == NotificationEvent.COMPLETED

    def test_skip_cache_runs_pipeline(self, orchestrator, provider):
        _run(orchestrator)
        calls = len(provider.calls)
        second = _run(orchestrator, skip_cache=True)
        assert second.metadata.cache_hit is False
        assert len(provider.calls) == calls * 2

    def test_invalidated_dataset_misses(self, orchestrator, provider):
        _run(orchestrator)
        assert orchestrator.invalidate_dataset_cache(DATASET_ID) == 1
        second = _run(orchestrator)
        assert second.metadata.cache_hit is False

    def test_dedupe_in_flight(self, orchestrator, provider):
        orchestrator.settings.dedupe_in_flight = True
        first = _submit(orchestrator)
        second = _submit(orchestrator)
        orchestrator.run(first.id)
        orchestrator.run(second.id)
        assert second.metadata.cache_hit is True


# Clarification & retry

class TestClarificationAndRetry:
    def test_ambiguous_query_requests_clarification(self, orchestrator, provider, sandbox):
        provider.replies["intent"] = json.dumps({
            "needs_clarification": True,
            "clarification_needed": "Which time period should be analysed?",
        })
        request = _run(orchestrator)
        assert request.status == AnalysisStatus.REQUIRES_CLARIFICATION
        assert request.clarification_question == "Which time period should be analysed?"
        assert request.error_message is None
        assert sandbox.runs == []
        status = orchestrator.get_status(request.id)
        assert status.current_step_description == request.clarification_question

    def test_retry_after_clarification(self, orchestrator, provider):
        provider.replies["intent"] = [
            json.dumps({"needs_clarification": True, "clarification_needed": "Which year?"}),
            json.dumps({"complexity_score": 2}),
        ]
        request = _run(orchestrator)
        orchestrator.retry(request.id)
        assert request.status == AnalysisStatus.PENDING
        assert request.clarification_question is None
        assert request.metadata.retry_count == 1

        orchestrator.run(request.id)
        assert request.status == AnalysisStatus.COMPLETED

    def test_retry_failed_clears_steps_keeps_usage(self, orchestrator, sandbox):
        sandbox.results = [SandboxResult(success=False, exit_code=1)]
        request = _run(orchestrator)
        spent = request.metadata.total_cost
        orchestrator.retry(request.id)
        assert request.error_message is None
        assert orchestrator.store.get_steps(request.id) == []
        assert request.metadata.total_cost == spent

        orchestrator.run(request.id)
        assert request.status == AnalysisStatus.COMPLETED
        assert request.metadata.total_cost > spent

    def test_retry_completed_rejected(self, orchestrator):
        request = _run(orchestrator)
        with pytest.raises(StateTransitionError):
            orchestrator.retry(request.id)

    def test_retry_dispatches(self, orchestrator, sandbox):
        dispatched = []
        orchestrator.dispatcher = dispatched.append
        sandbox.results = [SandboxResult(success=False, exit_code=1)]
        request = _submit(orchestrator)
        orchestrator.run(request.id)
        orchestrator.retry(request.id)
        assert dispatched == [request.id, request.id]


# Submission & reads

class TestSubmit:
    def test_submit_creates_pending(self, orchestrator):
        request = _submit(orchestrator, query=f"  {QUERY}  ")
        assert request.status == AnalysisStatus.PENDING
        assert request.query == QUERY
        assert orchestrator.store.get(request.id) is request
        assert orchestrator.get_status(request.id).progress_percent == 0

    @pytest.mark.parametrize("query", ["too short", "x" * 5001, "          "])
    def test_query_length_bounds(self, orchestrator, query):
        with pytest.raises(ValidationError):
            _submit(orchestrator, query=query)
        assert orchestrator.store.count() == 0

    def test_unknown_dataset(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.submit(QUERY, 999, ORG_ID, USER_ID)

    def test_dataset_of_other_organization(self, orchestrator):
        with pytest.raises(ValidationError, match="does not belong"):
            orchestrator.submit(QUERY, OTHER_DATASET_ID, ORG_ID, USER_ID)

    def test_user_of_other_organization(self, orchestrator):
        with pytest.raises(ValidationError, match="not a member"):
            orchestrator.submit(QUERY, DATASET_ID, ORG_ID, OTHER_USER_ID)

    def test_result_before_completion(self, orchestrator):
        request = _submit(orchestrator)
        with pytest.raises(ResultNotReadyError):
            orchestrator.get_result(request.id)

    def test_run_non_pending_is_noop(self, orchestrator, provider):
        request = _run(orchestrator)
        calls = len(provider.calls)
        orchestrator.run(request.id)
        assert len(provider.calls) == calls
        assert request.status == AnalysisStatus.COMPLETED

    def test_status_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_status("missing")
