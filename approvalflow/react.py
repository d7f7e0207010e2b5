"""
Bounded ReAct loop: Thought -> Action -> Observation, until a final answer.

The control flow is a small state machine kept free of I/O::

    THINKING --model output--> AWAITING_TOOL --observation--> THINKING
    THINKING --final answer--> DONE

``plan_next``, ``on_model_output`` and ``on_observation`` take a state and
return the next state plus the effect to perform. ``ReActLoop`` is the runner
that performs effects (model calls, tool dispatch) and turns them into
streamed events. The iteration ceiling lives in ``plan_next`` so a runaway
model cannot loop forever regardless of what it outputs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

from approvalflow.action_parser import parse_action
from approvalflow.config import settings
from approvalflow.exceptions import IterationLimitExceeded, ModelUnavailableError, ParseError
from approvalflow.models import InvocationState, ToolInvocation, jsonable
from approvalflow.observability import trace_span
from approvalflow.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "I apologize, but I wasn't able to complete your request within the allowed time. "
    "Please try breaking down your request into smaller parts."
)
MODEL_ERROR_MESSAGE = (
    "I apologize, but I encountered an error processing your request. "
    "Please try again or contact HR support if the issue persists."
)
CANCELLED_MESSAGE = "Request cancelled."


class ChatModel(Protocol):
    def stream(self, messages: list[dict]) -> AsyncIterator[str]: ...


class LoopPhase(str, Enum):
    THINKING = "thinking"
    AWAITING_TOOL = "awaiting_tool"
    DONE = "done"


@dataclass(frozen=True)
class LoopState:
    phase: LoopPhase
    messages: tuple[dict[str, str], ...]
    iteration: int = 0
    trace: tuple[ToolInvocation, ...] = ()
    final_text: str | None = None
    stop_reason: str | None = None


@dataclass(frozen=True)
class CallModel:
    messages: tuple[dict[str, str], ...]


@dataclass(frozen=True)
class DispatchTool:
    call_id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class RecordParseError:
    error: str


@dataclass(frozen=True)
class Finish:
    text: str
    reason: str


def initial_state(system_prompt: str, history: list[dict[str, str]], utterance: str) -> LoopState:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": utterance})
    return LoopState(phase=LoopPhase.THINKING, messages=tuple(messages))


def plan_next(state: LoopState, max_iterations: int, cancelled: bool = False) -> CallModel | Finish:
    if state.phase is LoopPhase.DONE:
        return Finish(state.final_text or "", state.stop_reason or "final_answer")
    if state.phase is LoopPhase.AWAITING_TOOL:
        raise RuntimeError("Pending tool call must be observed before the next model call")
    if cancelled:
        return Finish(CANCELLED_MESSAGE, "cancelled")
    if state.iteration >= max_iterations:
        raise IterationLimitExceeded(max_iterations)
    return CallModel(state.messages)


def on_model_output(state: LoopState, output: str) -> tuple[LoopState, DispatchTool | RecordParseError | Finish]:
    iteration = state.iteration + 1
    messages = state.messages + ({"role": "assistant", "content": output},)

    try:
        action = parse_action(output)
        if action.is_final and not action.final_text.strip():
            raise ParseError("final_answer requires a non-empty 'response'")
    except ParseError as e:
        feedback = (
            f"PARSE ERROR: {e.message}. Respond with exactly one action as a fenced JSON block "
            'with "thought", "action" and "action_input".'
        )
        next_state = replace(
            state,
            phase=LoopPhase.THINKING,
            iteration=iteration,
            messages=messages + ({"role": "user", "content": feedback},),
        )
        return next_state, RecordParseError(e.message)

    if action.is_final:
        text = action.final_text.strip()
        next_state = replace(
            state,
            phase=LoopPhase.DONE,
            iteration=iteration,
            messages=messages,
            final_text=text,
            stop_reason="final_answer",
        )
        return next_state, Finish(text, "final_answer")

    next_state = replace(state, phase=LoopPhase.AWAITING_TOOL, iteration=iteration, messages=messages)
    return next_state, DispatchTool(f"call-{iteration}", action.action, dict(action.action_input))


def on_observation(state: LoopState, invocation: ToolInvocation) -> LoopState:
    if state.phase is not LoopPhase.AWAITING_TOOL:
        raise RuntimeError(f"No tool call pending (phase={state.phase.value})")
    observation = json.dumps(invocation.observation(), default=str)
    return replace(
        state,
        phase=LoopPhase.THINKING,
        messages=state.messages + ({"role": "user", "content": f"OBSERVATION: {observation}"},),
        trace=state.trace + (invocation,),
    )


def finish(state: LoopState, text: str, reason: str) -> LoopState:
    return replace(state, phase=LoopPhase.DONE, final_text=text, stop_reason=reason)


@dataclass
class LoopResult:
    final_text: str
    tool_trace: list[ToolInvocation] = field(default_factory=list)
    iterations: int = 0
    stop_reason: str = "final_answer"

    def to_dict(self) -> dict:
        return {
            "final_text": self.final_text,
            "tool_trace": [t.to_dict() for t in self.tool_trace],
            "iterations": self.iterations,
            "stop_reason": self.stop_reason,
        }


@dataclass(frozen=True)
class TextDelta:
    iteration: int
    text: str
    type: str = "text_delta"

    def to_dict(self) -> dict:
        return {"type": self.type, "iteration": self.iteration, "text": self.text}


@dataclass(frozen=True)
class ToolCallStarted:
    call_id: str
    name: str
    arguments: dict[str, Any]
    type: str = "tool_call_started"

    def to_dict(self) -> dict:
        return {"type": self.type, "call_id": self.call_id, "name": self.name, "arguments": jsonable(self.arguments)}


@dataclass(frozen=True)
class ToolCallFinished:
    invocation: ToolInvocation
    type: str = "tool_call_finished"

    def to_dict(self) -> dict:
        return {"type": self.type, **self.invocation.to_dict()}


@dataclass(frozen=True)
class ParseFailure:
    iteration: int
    error: str
    type: str = "parse_error"

    def to_dict(self) -> dict:
        return {"type": self.type, "iteration": self.iteration, "error": self.error}


@dataclass(frozen=True)
class FinalResponse:
    """Complete answer; replaces any streamed draft text."""

    result: LoopResult
    type: str = "final"

    def to_dict(self) -> dict:
        return {"type": self.type, **self.result.to_dict()}


LoopEvent = TextDelta | ToolCallStarted | ToolCallFinished | ParseFailure | FinalResponse


class _Aborted(Exception):
    pass


async def _race(awaitable: Awaitable, abort: asyncio.Event | None):
    """Await ``awaitable`` unless ``abort`` fires first, in which case it is cancelled."""
    if abort is None:
        return await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise _Aborted()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise _Aborted()


class ReActLoop:
    """Runs the state machine against a model and a tool registry."""

    def __init__(
        self,
        model: ChatModel,
        registry: ToolRegistry,
        max_iterations: int | None = None,
        max_history: int | None = None,
    ):
        self.model = model
        self.registry = registry
        self.max_iterations = max_iterations or settings.max_iterations
        self.max_history = settings.max_history if max_history is None else max_history

    async def run(
        self,
        utterance: str,
        history: list[dict[str, str]],
        context: ToolContext,
        system_prompt: str,
        abort: asyncio.Event | None = None,
    ) -> LoopResult:
        result = None
        async for event in self.stream(utterance, history, context, system_prompt, abort):
            if isinstance(event, FinalResponse):
                result = event.result
        return result

    async def stream(
        self,
        utterance: str,
        history: list[dict[str, str]],
        context: ToolContext,
        system_prompt: str,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[LoopEvent]:
        window = history[-self.max_history :] if self.max_history > 0 else []
        state = initial_state(system_prompt, window, utterance)

        with trace_span("agent.run", employee=context.identity.id, session=context.session_id):
            while state.phase is not LoopPhase.DONE:
                try:
                    effect = plan_next(state, self.max_iterations, cancelled=bool(abort and abort.is_set()))
                except IterationLimitExceeded as e:
                    logger.warning(f"Loop stopped for {context.identity.id}: {e.message}")
                    state = finish(state, FALLBACK_MESSAGE, "iteration_limit")
                    break

                if isinstance(effect, Finish):
                    state = finish(state, effect.text, effect.reason)
                    break

                chunks: list[str] = []
                stream = self.model.stream(list(effect.messages))
                try:
                    while True:
                        try:
                            delta = await _race(stream.__anext__(), abort)
                        except StopAsyncIteration:
                            break
                        chunks.append(delta)
                        yield TextDelta(state.iteration + 1, delta)
                except _Aborted:
                    state = finish(state, CANCELLED_MESSAGE, "cancelled")
                    break
                except ModelUnavailableError as e:
                    logger.error(f"Model unavailable, ending turn: {e.message}")
                    state = finish(state, MODEL_ERROR_MESSAGE, "model_error")
                    break
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

                state, effect = on_model_output(state, "".join(chunks))

                if isinstance(effect, RecordParseError):
                    logger.info(f"Unparseable model output at iteration {state.iteration}: {effect.error}")
                    yield ParseFailure(state.iteration, effect.error)
                    continue

                if isinstance(effect, Finish):
                    break

                yield ToolCallStarted(effect.call_id, effect.name, effect.arguments)
                try:
                    invocation = await _race(
                        self.registry.dispatch(effect.name, effect.arguments, context, effect.call_id),
                        abort,
                    )
                except _Aborted:
                    logger.info(f"Tool {effect.name} aborted by caller")
                    invocation = ToolInvocation(
                        call_id=effect.call_id,
                        name=effect.name,
                        arguments=effect.arguments,
                        state=InvocationState.FAILED,
                        error="cancelled",
                    )
                    state = on_observation(state, invocation)
                    yield ToolCallFinished(invocation)
                    state = finish(state, CANCELLED_MESSAGE, "cancelled")
                    break

                state = on_observation(state, invocation)
                yield ToolCallFinished(invocation)

        logger.info(
            f"Loop finished: employee={context.identity.id} reason={state.stop_reason} "
            f"iterations={state.iteration} tools={[t.name for t in state.trace]}"
        )
        yield FinalResponse(
            LoopResult(
                final_text=state.final_text or "",
                tool_trace=list(state.trace),
                iterations=state.iteration,
                stop_reason=state.stop_reason or "final_answer",
            )
        )
