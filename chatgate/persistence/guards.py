from __future__ import annotations


class WorkspacePredicateError(RuntimeError):
    # Surface tenant-scoped queries that were about to run without a workspace filter.
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def require_workspace_id(workspace_id: str | None) -> str:
    if not workspace_id or not str(workspace_id).strip():
        raise WorkspacePredicateError("Workspace predicate required but workspace_id is missing")
    return workspace_id


def workspace_predicate(model, workspace_id: str | None) -> object:
    # Build tenant predicates through a single helper so no query skips the filter.
    return model.workspace_id == require_workspace_id(workspace_id)


def owner_predicate(model, owner_id: str | None) -> object:
    # Ownership double-check used on top of the workspace filter for mutations.
    if not owner_id:
        raise WorkspacePredicateError("Owner predicate required but owner_id is missing")
    return model.owner_id == owner_id
