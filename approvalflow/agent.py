"""
Approval agent: wires the ReAct loop to the policy engine, lifecycle manager,
tools and session memory, and applies the security guards around each turn.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from approvalflow.audit import AuditSink
from approvalflow.collaborators import HandbookClient, ModelReceiptExtractor, ReceiptExtractor
from approvalflow.config import settings
from approvalflow.exceptions import UnsafeInputError
from approvalflow.guards import (
    SAFETY_RULES,
    VERIFY_RESPONSE,
    mentioned_other_employee,
    redact_response,
    response_contains_decision,
    screen_user_message,
)
from approvalflow.lifecycle import RequestLifecycleManager
from approvalflow.llm import ModelClient
from approvalflow.models import Identity, InvocationState
from approvalflow.policy import PolicyEngine
from approvalflow.prompts import build_system_prompt
from approvalflow.react import ChatModel, FinalResponse, LoopEvent, LoopResult, ReActLoop, TextDelta
from approvalflow.registry import ToolContext, ToolRegistry
from approvalflow.sessions import SessionStore
from approvalflow.sql_store import SqlStore
from approvalflow.store import InMemoryStore, RecordStore
from approvalflow.tools import build_tool_registry

logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGE = "Access denied: you can only act on your own requests."


class ApprovalAgent:
    """One instance per process; conversations are isolated by session id."""

    def __init__(
        self,
        store: RecordStore,
        model: ChatModel,
        registry: ToolRegistry | None = None,
        handbook: HandbookClient | None = None,
        receipts: ReceiptExtractor | None = None,
        sessions: SessionStore | None = None,
        max_iterations: int | None = None,
        insufficient_balance_mode: str | None = None,
    ):
        self.store = store
        self.model = model
        self.handbook = handbook
        self.receipts = receipts
        self.audit = AuditSink(store)
        self.engine = PolicyEngine(
            store,
            handbook=handbook,
            insufficient_balance_mode=insufficient_balance_mode or settings.insufficient_balance_mode,
        )
        self.lifecycle = RequestLifecycleManager(store, self.audit)
        self.registry = registry or build_tool_registry()
        self.loop = ReActLoop(model, self.registry, max_iterations=max_iterations)
        self.sessions = sessions or SessionStore()

    async def startup(self):
        if isinstance(self.store, SqlStore):
            await self.store.create_schema(seed=True)

    async def shutdown(self):
        if isinstance(self.store, SqlStore):
            await self.store.dispose()

    def _context(self, identity: Identity, session) -> ToolContext:
        return ToolContext(
            identity=identity,
            store=self.store,
            engine=self.engine,
            lifecycle=self.lifecycle,
            audit=self.audit,
            conversation=session.state,
            handbook=self.handbook,
            receipts=self.receipts,
            session_id=session.session_id,
        )

    async def chat_stream(
        self,
        message: str,
        session_id: str,
        identity: Identity,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[LoopEvent]:
        """
        Run one turn and yield loop events; the last event is always FinalResponse.

        TextDelta events are the model's draft with redaction applied chunk by
        chunk. A pattern split across two chunks, and the tool-evidence check,
        are only handled in the FinalResponse text, which replaces the draft.

        Raises:
            AuthorizationError: If the session belongs to another employee
        """
        logger.info(f"Processing message for session {session_id} (employee={identity.id})")

        other = mentioned_other_employee(message, identity.id)
        if other:
            logger.warning(
                f"Cross-employee access attempt blocked: session={identity.id}, requested={other}"
            )
            yield FinalResponse(LoopResult(ACCESS_DENIED_MESSAGE, stop_reason="access_denied"))
            return

        try:
            screen_user_message(message)
        except UnsafeInputError as e:
            yield FinalResponse(LoopResult(str(e), stop_reason="rejected"))
            return

        session = self.sessions.open(session_id, identity.id)
        history = self.sessions.recent(session_id, self.loop.max_history)
        session.state.begin_turn(message)

        system_prompt = f"{build_system_prompt(identity, self.registry.catalog())}\n\n{SAFETY_RULES}"
        context = self._context(identity, session)

        async for event in self.loop.stream(message, history, context, system_prompt, abort):
            if isinstance(event, TextDelta):
                event = TextDelta(event.iteration, redact_response(event.text))
            elif isinstance(event, FinalResponse):
                result = event.result
                result.final_text = redact_response(self._enforce_tool_evidence(result, session_id))
                self.sessions.append_turn(
                    session_id, message, result.final_text, [t.to_dict() for t in result.tool_trace]
                )
            yield event

    async def chat(
        self,
        message: str,
        session_id: str,
        identity: Identity,
        abort: asyncio.Event | None = None,
    ) -> LoopResult:
        result = None
        async for event in self.chat_stream(message, session_id, identity, abort):
            if isinstance(event, FinalResponse):
                result = event.result
        return result

    @staticmethod
    def _enforce_tool_evidence(result: LoopResult, session_id: str) -> str:
        """An approval outcome may only be stated after a successful tool call."""
        if result.stop_reason != "final_answer":
            return result.final_text
        tools_succeeded = any(t.state is InvocationState.SUCCEEDED for t in result.tool_trace)
        if response_contains_decision(result.final_text) and not tools_succeeded:
            logger.warning(
                "Blocked response: model stated a decision without tool evidence "
                f"(session={session_id})"
            )
            return VERIFY_RESPONSE
        return result.final_text

    def reset_conversation(self, session_id: str) -> bool:
        return self.sessions.reset(session_id)

    def get_conversation_history(self, session_id: str) -> list[dict]:
        return self.sessions.history(session_id)


def build_agent() -> ApprovalAgent:
    """Assemble the production agent from settings."""
    store = SqlStore.from_url(settings.database_url) if settings.database_url else InMemoryStore.seeded()
    model = ModelClient()
    return ApprovalAgent(
        store=store,
        model=model,
        handbook=HandbookClient(model),
        receipts=ModelReceiptExtractor(ModelClient(model=settings.receipt_model)),
    )


# Global agent instance
approval_agent = None


def get_agent() -> ApprovalAgent:
    """Get or create global agent instance."""
    global approval_agent
    if approval_agent is None:
        approval_agent = build_agent()
    return approval_agent
