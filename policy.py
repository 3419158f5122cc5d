"""Access policy engine.

Pure decision logic, no I/O.  Handlers load the actor's role and the
resource owner/status from the stores, then ask the engine whether the
action is allowed.  Denials are returned as :class:`Decision` values and
turned into :class:`errors.Forbidden` with :meth:`Decision.enforce`.

The route table names the gate every route sits behind.  The default table
reproduces the gates the platform has always shipped with, including a few
admin-sounding routes that only require a signed-in user; ``STRICT_ROUTES``
puts those behind the admin role instead.

Usage::

    policy = AccessPolicy()
    policy.authorize_role_gate(actor_role, policy.rule_for("users.list").roles).enforce()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from errors import Forbidden, InvalidInput
from schemas import LOAN_STATUSES, ROLES

logger = logging.getLogger(__name__)

PRIVILEGED_STATUS_TARGETS = frozenset({"Pending", "Approved", "Rejected"})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def enforce(self) -> None:
        if not self.allowed:
            raise Forbidden(self.reason)


ALLOW = Decision(True)


@dataclass(frozen=True)
class RouteRule:
    """Gate for one route.

    ``authenticate=False`` means public.  An empty ``roles`` set means any
    signed-in user passes; otherwise the actor's role must be listed.
    """

    authenticate: bool = True
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def role_gated(self) -> bool:
        return bool(self.roles)


PUBLIC = RouteRule(authenticate=False)
AUTHENTICATED = RouteRule()
ADMIN_ONLY = RouteRule(roles=frozenset({"admin"}))
MANAGER_ONLY = RouteRule(roles=frozenset({"manager"}))

DEFAULT_ROUTES: Dict[str, RouteRule] = {
    "users.create": PUBLIC,
    "users.role": PUBLIC,
    "profile.read": AUTHENTICATED,
    "profile.update": AUTHENTICATED,
    "users.list": ADMIN_ONLY,
    "users.set_role": ADMIN_ONLY,
    "users.suspend": ADMIN_ONLY,
    "users.approve": AUTHENTICATED,
    "users.manager_stats": MANAGER_ONLY,
    "loans.query": AUTHENTICATED,
    "loans.create": AUTHENTICATED,
    "loans.owner_update": AUTHENTICATED,
    "loans.owner_delete": AUTHENTICATED,
    "loans.by_user": AUTHENTICATED,
    "loans.admin_list": AUTHENTICATED,
    "loans.applications": AUTHENTICATED,
    "loans.admin_status": ADMIN_ONLY,
    "loans.show_on_home": AUTHENTICATED,
    "loans.admin_delete": AUTHENTICATED,
    "loans.manager_update": MANAGER_ONLY,
    "loans.manager_list": MANAGER_ONLY,
    "loans.pending": MANAGER_ONLY,
    "loans.approved": MANAGER_ONLY,
    "loans.manager_status": MANAGER_ONLY,
}

STRICT_ROUTES: Dict[str, RouteRule] = dict(
    DEFAULT_ROUTES,
    **{
        "users.approve": ADMIN_ONLY,
        "loans.by_user": ADMIN_ONLY,
        "loans.admin_list": ADMIN_ONLY,
        "loans.applications": ADMIN_ONLY,
        "loans.show_on_home": ADMIN_ONLY,
        "loans.admin_delete": ADMIN_ONLY,
    },
)


class AccessPolicy:
    """Authorization and loan status-transition rules.

    Parameters
    ----------
    routes:
        Route name → :class:`RouteRule`.  Missing names fall back to
        :data:`DEFAULT_ROUTES`.
    owner_status_targets:
        Statuses a borrower may move their own Pending loan to.  ``None``
        accepts any value.
    privileged_status_targets:
        Statuses the admin/manager status routes accept.
    """

    def __init__(
        self,
        routes: Optional[Mapping[str, RouteRule]] = None,
        owner_status_targets: Optional[Iterable[str]] = None,
        privileged_status_targets: Iterable[str] = PRIVILEGED_STATUS_TARGETS,
    ) -> None:
        self._routes = dict(DEFAULT_ROUTES)
        if routes:
            self._routes.update(routes)
        self.owner_status_targets = (
            frozenset(owner_status_targets) if owner_status_targets is not None else None
        )
        self.privileged_status_targets = frozenset(privileged_status_targets)
        unknown = self.privileged_status_targets - LOAN_STATUSES
        if unknown:
            raise ValueError(f"Unknown loan statuses: {sorted(unknown)}")

    @classmethod
    def from_settings(cls, settings) -> AccessPolicy:
        routes = STRICT_ROUTES if settings.strict_role_gates else DEFAULT_ROUTES
        return cls(routes=routes, owner_status_targets=settings.loan_owner_status_targets)

    def rule_for(self, route: str) -> RouteRule:
        try:
            return self._routes[route]
        except KeyError:
            # unknown routes fail closed
            logger.error("No access rule for route %s", route)
            return ADMIN_ONLY

    def authorize_role_gate(
        self, actor_role: Optional[str], required_roles: Iterable[str]
    ) -> Decision:
        required = frozenset(required_roles)
        if not required:
            return ALLOW
        if actor_role is None:
            return Decision(False, "Forbidden: User not found")
        if actor_role not in required:
            wanted = " or ".join(r.capitalize() for r in sorted(required))
            return Decision(False, f"Forbidden: {wanted} access required")
        return ALLOW

    def authorize_ownership(self, actor_email: str, owner_email: Optional[str]) -> Decision:
        if owner_email is None or actor_email != owner_email:
            return Decision(False, "Forbidden: Cannot access other users' data")
        return ALLOW

    def authorize_loan_query(
        self, actor_email: str, requested_email: Optional[str]
    ) -> Tuple[Decision, str]:
        """Return the decision and the email the listing should filter on."""
        if not requested_email:
            return ALLOW, actor_email
        if requested_email != actor_email:
            return Decision(False, "Forbidden: Cannot access other users' loan data"), actor_email
        return ALLOW, requested_email

    def check_owner_status_target(self, status: Optional[str]) -> str:
        if not status:
            raise InvalidInput("Status is required")
        if self.owner_status_targets is not None and status not in self.owner_status_targets:
            raise InvalidInput("Invalid status")
        return status

    def check_privileged_status(self, status: Optional[str]) -> str:
        if status not in self.privileged_status_targets:
            raise InvalidInput("Invalid status")
        return status

    @staticmethod
    def check_role(role: Optional[str]) -> str:
        if role not in ROLES:
            raise InvalidInput("Invalid role")
        return role
