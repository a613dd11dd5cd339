from __future__ import annotations

import pytest

from chatgate.core.errors import Unauthenticated
from chatgate.domain.models import Document
from chatgate.persistence.guards import (
    WorkspacePredicateError,
    owner_predicate,
    require_workspace_id,
    workspace_predicate,
)
from chatgate.services.auth.identity import (
    issue_session_token,
    parse_bearer_token,
    verify_session_token,
)


def test_issued_token_round_trips_to_identity() -> None:
    identity = verify_session_token(issue_session_token("user-1", email="a@example.com"))
    assert identity.user_id == "user-1"
    assert identity.email == "a@example.com"


def test_expired_token_is_rejected() -> None:
    with pytest.raises(Unauthenticated):
        verify_session_token(issue_session_token("user-1", expires_in_s=-3600))


def test_token_signed_with_another_secret_is_rejected() -> None:
    with pytest.raises(Unauthenticated):
        verify_session_token(issue_session_token("user-1", secret="someone-else"))


def test_bearer_header_parsing() -> None:
    assert parse_bearer_token(None) is None
    assert parse_bearer_token("Bearer abc") == "abc"
    with pytest.raises(Unauthenticated):
        parse_bearer_token("Basic abc")
    with pytest.raises(Unauthenticated):
        parse_bearer_token("Bearer")


def test_workspace_predicates_refuse_blank_ids() -> None:
    with pytest.raises(WorkspacePredicateError):
        require_workspace_id("  ")
    with pytest.raises(WorkspacePredicateError):
        workspace_predicate(Document, None)
    with pytest.raises(WorkspacePredicateError):
        owner_predicate(Document, "")
    clause = workspace_predicate(Document, "ws-1")
    assert "workspace_id" in str(clause)
