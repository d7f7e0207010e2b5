"""
Tests for the ReAct state machine and its streaming runner.
"""

import asyncio
import json

import pytest

from approvalflow.exceptions import IterationLimitExceeded, ModelUnavailableError
from approvalflow.models import InvocationState, ToolInvocation
from approvalflow.react import (
    CANCELLED_MESSAGE,
    FALLBACK_MESSAGE,
    MODEL_ERROR_MESSAGE,
    CallModel,
    DispatchTool,
    Finish,
    FinalResponse,
    LoopPhase,
    ParseFailure,
    ReActLoop,
    RecordParseError,
    TextDelta,
    ToolCallFinished,
    ToolCallStarted,
    initial_state,
    on_model_output,
    on_observation,
    plan_next,
)
from approvalflow.registry import Tool, ToolRegistry
from scripted import ScriptedModel, action, final


def collect(loop, context, utterance="How many PTO days do I have?", history=None, abort=None):
    async def _collect():
        return [
            event
            async for event in loop.stream(utterance, history or [], context, "You are a test agent.", abort)
        ]

    return asyncio.run(_collect())


class TestStateMachine:
    """Pure transitions, no I/O."""

    def test_initial_state(self):
        history = [{"role": "user", "content": "hi", "extra": 1}, {"role": "assistant", "content": "hello"}]
        state = initial_state("system", history, "next")
        assert state.phase is LoopPhase.THINKING
        assert state.messages[0] == {"role": "system", "content": "system"}
        assert state.messages[1] == {"role": "user", "content": "hi"}
        assert state.messages[-1] == {"role": "user", "content": "next"}

    def test_tool_call_then_observation(self):
        state = initial_state("system", [], "balance?")
        assert isinstance(plan_next(state, 15), CallModel)

        state, effect = on_model_output(state, action("get_pto_balance"))
        assert state.phase is LoopPhase.AWAITING_TOOL
        assert state.iteration == 1
        assert effect == DispatchTool("call-1", "get_pto_balance", {})

        with pytest.raises(RuntimeError):
            plan_next(state, 15)

        invocation = ToolInvocation(
            "call-1", "get_pto_balance", {}, InvocationState.SUCCEEDED, {"current_balance": 15.0}
        )
        state = on_observation(state, invocation)
        assert state.phase is LoopPhase.THINKING
        assert state.trace == (invocation,)
        observation = state.messages[-1]["content"]
        assert observation.startswith("OBSERVATION: ")
        assert json.loads(observation[len("OBSERVATION: "):]) == {
            "tool": "get_pto_balance",
            "success": True,
            "result": {"current_balance": 15.0},
        }

    def test_final_answer(self):
        state, effect = on_model_output(initial_state("s", [], "u"), final("You have 15 days."))
        assert state.phase is LoopPhase.DONE
        assert effect == Finish("You have 15 days.", "final_answer")
        assert plan_next(state, 15) == Finish("You have 15 days.", "final_answer")

    def test_parse_error_feeds_back(self):
        state, effect = on_model_output(initial_state("s", [], "u"), "Sure, I can help!")
        assert isinstance(effect, RecordParseError)
        assert state.phase is LoopPhase.THINKING
        assert state.iteration == 1
        assert state.messages[-2] == {"role": "assistant", "content": "Sure, I can help!"}
        assert state.messages[-1]["content"].startswith("PARSE ERROR: No action found")

    def test_empty_final_answer_is_parse_error(self):
        _, effect = on_model_output(initial_state("s", [], "u"), final("   "))
        assert isinstance(effect, RecordParseError)

    def test_iteration_ceiling(self):
        state = initial_state("s", [], "u")
        for _ in range(3):
            state, _ = on_model_output(state, "no action")
        with pytest.raises(IterationLimitExceeded):
            plan_next(state, 3)

    def test_cancelled_before_model_call(self):
        assert plan_next(initial_state("s", [], "u"), 15, cancelled=True) == Finish(CANCELLED_MESSAGE, "cancelled")

    def test_observation_without_pending_call(self):
        invocation = ToolInvocation("call-1", "x", {})
        with pytest.raises(RuntimeError):
            on_observation(initial_state("s", [], "u"), invocation)


class TestReActLoop:
    """Runner behaviour against a scripted model and the real tool registry."""

    def test_parse_error_then_tool_then_answer(self, registry, make_context, junior):
        model = ScriptedModel(
            [
                "Let me look that up for you.",
                action("get_pto_balance", thought="Need the balance"),
                final("You have 15 days of PTO available."),
            ]
        )
        events = collect(ReActLoop(model, registry), make_context(junior))

        kinds = [type(e) for e in events]
        assert kinds == [
            TextDelta,
            TextDelta,
            ParseFailure,
            TextDelta,
            TextDelta,
            ToolCallStarted,
            ToolCallFinished,
            TextDelta,
            TextDelta,
            FinalResponse,
        ]
        result = events[-1].result
        assert result.final_text == "You have 15 days of PTO available."
        assert result.stop_reason == "final_answer"
        assert result.iterations == 3
        assert [t.name for t in result.tool_trace] == ["get_pto_balance"]
        assert result.tool_trace[0].result["current_balance"] == 15.0

        assert len(model.calls) == 3
        assert model.calls[1][-1]["content"].startswith("PARSE ERROR:")
        assert model.calls[2][-1]["content"].startswith("OBSERVATION:")

    def test_deltas_reassemble_model_output(self, registry, make_context, junior):
        text = final("Enjoy your trip!")
        events = collect(ReActLoop(ScriptedModel([text]), registry), make_context(junior))
        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == text

    def test_tool_failure_is_observed(self, registry, make_context, junior):
        model = ScriptedModel([action("approve_everything"), final("I can't do that.")])
        events = collect(ReActLoop(model, registry), make_context(junior))

        finished = next(e for e in events if isinstance(e, ToolCallFinished))
        assert finished.invocation.state is InvocationState.FAILED
        observation = json.loads(model.calls[1][-1]["content"][len("OBSERVATION: "):])
        assert observation["success"] is False
        assert observation["error"].startswith("Unknown tool: approve_everything")
        assert events[-1].result.stop_reason == "final_answer"

    def test_iteration_limit_returns_fallback(self, registry, make_context, junior):
        model = ScriptedModel([action("get_pto_balance")])
        events = collect(ReActLoop(model, registry, max_iterations=15), make_context(junior))

        result = events[-1].result
        assert result.final_text == FALLBACK_MESSAGE
        assert result.stop_reason == "iteration_limit"
        assert result.iterations == 15
        assert len(result.tool_trace) == 15
        assert len(model.calls) == 15

    def test_history_window(self, registry, make_context, junior):
        history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(6)]
        model = ScriptedModel([final("ok")])
        collect(ReActLoop(model, registry, max_history=4), make_context(junior), history=history)

        sent = model.calls[0]
        assert [m["content"] for m in sent[1:-1]] == ["m2", "m3", "m4", "m5"]

    def test_model_error_ends_turn(self, registry, make_context, junior):
        class FailingModel:
            async def stream(self, messages):
                raise ModelUnavailableError("circuit open")
                yield  # pragma: no cover

        events = collect(ReActLoop(FailingModel(), registry), make_context(junior))
        assert len(events) == 1
        assert events[0].result.final_text == MODEL_ERROR_MESSAGE
        assert events[0].result.stop_reason == "model_error"

    def test_abort_before_start(self, registry, make_context, junior):
        model = ScriptedModel([final("never sent")])

        async def _run():
            abort = asyncio.Event()
            abort.set()
            return await ReActLoop(model, registry).run("hi", [], make_context(junior), "system", abort)

        result = asyncio.run(_run())
        assert result.stop_reason == "cancelled"
        assert result.final_text == CANCELLED_MESSAGE
        assert model.calls == []

    def test_abort_cancels_running_tool(self, make_context, junior):
        abort = None
        reached_end = []

        async def slow(args, ctx):
            abort.set()
            await asyncio.sleep(10)
            reached_end.append(True)
            return {}

        registry = ToolRegistry([Tool("slow", "Takes forever", slow)])
        model = ScriptedModel([action("slow"), final("done")])

        async def _run():
            nonlocal abort
            abort = asyncio.Event()
            return await ReActLoop(model, registry).run("go", [], make_context(junior), "system", abort)

        result = asyncio.run(_run())
        assert result.stop_reason == "cancelled"
        assert [(t.name, t.state, t.error) for t in result.tool_trace] == [
            ("slow", InvocationState.FAILED, "cancelled")
        ]
        assert reached_end == []
        assert len(model.calls) == 1

    def test_aborted_tool_still_emits_finished_event(self, make_context, junior):
        """Every tool_call_started is closed by a tool_call_finished."""
        abort = asyncio.Event()

        async def slow(args, ctx):
            abort.set()
            await asyncio.sleep(10)
            return {}

        loop = ReActLoop(ScriptedModel([action("slow"), final("done")]), ToolRegistry([Tool("slow", "Slow", slow)]))
        events = collect(loop, make_context(junior), abort=abort)

        started = [e for e in events if isinstance(e, ToolCallStarted)]
        finished = [e for e in events if isinstance(e, ToolCallFinished)]
        assert [e.call_id for e in started] == [e.invocation.call_id for e in finished]
        assert finished[0].invocation.observation() == {"tool": "slow", "success": False, "error": "cancelled"}
        assert isinstance(events[-1], FinalResponse)
        assert events[-1].result.final_text == CANCELLED_MESSAGE

    def test_event_payloads_are_json(self, registry, make_context, junior):
        model = ScriptedModel([action("get_pto_balance"), final("15 days.")])
        for event in collect(ReActLoop(model, registry), make_context(junior)):
            json.dumps(event.to_dict(), default=str)
