"""
Tool registry and dispatcher.

The catalog is fixed when the registry is built; tools are never added at
runtime. ``dispatch`` turns every call, successful or not, into a
``ToolInvocation`` so the orchestration loop only ever sees observations.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from approvalflow.exceptions import (
    ApprovalFlowError,
    AuthorizationError,
    ToolExecutionError,
    UnknownToolError,
)
from approvalflow.models import Identity, InvocationState, ToolInvocation
from approvalflow.observability import trace_span

if TYPE_CHECKING:
    from approvalflow.audit import AuditSink
    from approvalflow.collaborators import HandbookClient, ReceiptExtractor
    from approvalflow.conversation_state import ConversationState
    from approvalflow.lifecycle import RequestLifecycleManager
    from approvalflow.policy import PolicyEngine
    from approvalflow.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Everything a tool may touch. Built per turn; the identity is never model-supplied."""

    identity: Identity
    store: RecordStore
    engine: PolicyEngine
    lifecycle: RequestLifecycleManager
    audit: AuditSink
    conversation: ConversationState
    handbook: HandbookClient | None = None
    receipts: ReceiptExtractor | None = None
    session_id: str | None = None


ToolFn = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    execute: ToolFn
    parameters: dict[str, str] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "required": list(self.required),
        }


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Tool {tool.name} already registered")
            self._tools[tool.name] = tool
        logger.info(f"Tool registry built with {len(self._tools)} tools")

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name, self.names) from None

    def catalog(self) -> str:
        """Tool descriptions rendered for the system prompt."""
        return "\n".join(json.dumps(t.describe()) for t in self._tools.values())

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext,
        call_id: str | None = None,
    ) -> ToolInvocation:
        invocation = ToolInvocation(
            call_id=call_id or uuid.uuid4().hex[:8],
            name=name,
            arguments=dict(arguments),
        )

        with trace_span(f"tool.{name}", employee=context.identity.id, call=invocation.call_id):
            try:
                tool = self.get(name)
                args = self._bind_identity(arguments, context.identity)
                invocation.result = await tool.execute(args, context)
                invocation.state = InvocationState.SUCCEEDED
            except ApprovalFlowError as e:
                invocation.state = InvocationState.FAILED
                invocation.error = e.message
                logger.warning(f"Tool {name} failed ({e.code}): {e.message}")
            except Exception as e:
                invocation.state = InvocationState.FAILED
                invocation.error = ToolExecutionError(f"Error executing tool {name}: {e}").message
                logger.exception(f"Tool {name} raised unexpectedly")

        return invocation

    @staticmethod
    def _bind_identity(arguments: dict[str, Any], identity: Identity) -> dict[str, Any]:
        args = dict(arguments)
        supplied = args.pop("employee_id", None)
        if supplied is not None and str(supplied) != identity.id:
            logger.warning(f"Blocked impersonation attempt: {identity.id} -> {supplied}")
            raise AuthorizationError("Access denied: you can only act on your own requests.")
        return args
