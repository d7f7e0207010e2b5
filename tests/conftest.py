"""
Pytest configuration and fixtures.
Shared identities, a seeded store and a scripted model for loop tests.
"""

from datetime import date

import pytest

from approvalflow.agent import ApprovalAgent
from approvalflow.audit import AuditSink
from approvalflow.conversation_state import ConversationState
from approvalflow.lifecycle import RequestLifecycleManager
from approvalflow.models import Identity, Tier
from approvalflow.policy import PolicyEngine
from approvalflow.registry import ToolContext
from approvalflow.sessions import SessionStore
from approvalflow.store import InMemoryStore
from approvalflow.tools import build_tool_registry
from scripted import ScriptedModel


@pytest.fixture
def store():
    """Store seeded with reference balances and the 2025/2026 calendar."""
    return InMemoryStore.seeded()


@pytest.fixture
def junior():
    """Junior employee E001 with 15 days of PTO."""
    return Identity(
        id="E001",
        display_name="Alex Rivera",
        tier=Tier.JUNIOR,
        manager_id="E003",
        hire_date=date(2023, 2, 13),
        department="Engineering",
    )


@pytest.fixture
def senior():
    """Senior employee E002 with 23 days of PTO."""
    return Identity(
        id="E002",
        display_name="Priya Shah",
        tier=Tier.SENIOR,
        manager_id="E003",
        department="Marketing",
    )


@pytest.fixture
def low_balance():
    """Junior employee E004 with only 2 days of PTO."""
    return Identity(
        id="E004",
        display_name="Sam Okafor",
        tier=Tier.JUNIOR,
        manager_id="E003",
        department="Finance",
    )


@pytest.fixture
def manager():
    return Identity(id="E003", display_name="Morgan Lee", tier=Tier.SENIOR, department="Engineering")


@pytest.fixture
def engine(store):
    return PolicyEngine(store)


@pytest.fixture
def lifecycle(store):
    return RequestLifecycleManager(store, AuditSink(store))


@pytest.fixture
def make_context(store, engine, lifecycle):
    """Build a ToolContext for an identity, optionally with a shared conversation state."""

    def _make(identity, conversation=None, **collaborators):
        return ToolContext(
            identity=identity,
            store=store,
            engine=engine,
            lifecycle=lifecycle,
            audit=lifecycle.audit,
            conversation=conversation or ConversationState(),
            session_id="test-session",
            **collaborators,
        )

    return _make


@pytest.fixture
def registry():
    return build_tool_registry()


@pytest.fixture
def make_agent(store):
    """Agent over the seeded store with a scripted model."""

    def _make(outputs, **kwargs):
        model = ScriptedModel(outputs)
        agent = ApprovalAgent(store=store, model=model, sessions=SessionStore(), **kwargs)
        return agent, model

    return _make
