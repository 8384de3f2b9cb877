"""
Access policy: role-based authorization scoped to projects.

An actor's role is per project (see Membership). Roles:
- owner: every operation within the project, including membership management
- editor: put, get, delete, list, export, import, analyze (no history,
  no historical versions, no environment or actor management)
- viewer: get, list, export, analyze of current values; never insecure
  plaintext unless the actor carries an explicit reveal grant

The engine only decides. Reporting each decision to the audit log is the
caller's job (the secret store does it for every operation).
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from .errors import DenialReason, ForbiddenError
from .models import Actor, Operation, Role, SecretStatus

logger = logging.getLogger(__name__)

_VIEWER_OPERATIONS = frozenset(
    {
        Operation.GET,
        Operation.LIST,
        Operation.EXPORT,
        Operation.ANALYZE,
        Operation.READ_PROJECT,
    }
)

_EDITOR_OPERATIONS = _VIEWER_OPERATIONS | frozenset(
    {
        Operation.PUT,
        Operation.DELETE,
        Operation.IMPORT,
    }
)

DEFAULT_GRANTS: Dict[Role, FrozenSet[Operation]] = {
    Role.OWNER: frozenset(Operation),
    Role.EDITOR: _EDITOR_OPERATIONS,
    Role.VIEWER: _VIEWER_OPERATIONS,
}


class AccessPolicy:
    """Stateless authorization over (actor, project role, operation)."""

    def __init__(self, grants: Optional[Dict[Role, FrozenSet[Operation]]] = None) -> None:
        self._grants = dict(grants or DEFAULT_GRANTS)

    def permits(self, role: Optional[Role], operation: Operation) -> bool:
        return role is not None and operation in self._grants.get(role, frozenset())

    def authorize(
        self, actor: Actor, project_id: str, operation: Operation, role: Optional[Role]
    ) -> None:
        """
        Allow or deny an operation.

        Args:
            role: The actor's role in the project, None if it has no membership

        Raises:
            ForbiddenError: With reason NOT_MEMBER or ROLE_INSUFFICIENT
        """
        if role is None:
            logger.debug("Actor %s is not a member of project %s", actor.actor_id, project_id)
            raise ForbiddenError(
                f"Actor {actor.actor_id} has no access to project {project_id}",
                DenialReason.NOT_MEMBER,
            )
        if not self.permits(role, operation):
            raise ForbiddenError(
                f"Role {role} may not perform {operation} in project {project_id}",
                DenialReason.ROLE_INSUFFICIENT,
            )

    def can_reveal(self, actor: Actor, role: Role, status: SecretStatus) -> bool:
        """Whether the actor may see plaintext of a value with this classification."""
        if status is not SecretStatus.INSECURE:
            return True
        return role is not Role.VIEWER or actor.reveal_insecure
