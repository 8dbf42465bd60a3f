"""
Scope resolution: who may see and touch which records.

A Scope is computed fresh for every call from the actor's current role and
branch memberships and then passed explicitly to every layer that reads or
writes (signal collector, generator, store, dispatcher). Nothing here is
cached between requests.

Modes:
  SYSTEM  admin/viewer: every active branch plus branch-less rows
  BRANCH  manager: the actor's branch memberships
  OWNER   telesales/direct_page: the actor's own records, limited to
          their branches; broadcast rows (owner NULL) stay visible
"""
from dataclasses import dataclass, field
from typing import Any, FrozenSet, List, Optional

from sqlalchemy import false, or_
from sqlalchemy.orm import Session

from kpi_coach.models.enums import Role, ScopeMode, SYSTEM_ROLES, BRANCH_ROLES, OWNER_ROLES
from kpi_coach.models.user import Branch, User, UserBranch
from kpi_coach.services.errors import ForbiddenError, ValidationError


@dataclass(frozen=True)
class Actor:
    """The authenticated user a request runs as."""
    user_id: int
    role: Role
    branch_id: Optional[int] = None

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        try:
            role = Role(user.role)
        except ValueError:
            raise ForbiddenError(f"Role '{user.role}' has no access to the coach")
        return cls(user_id=user.id, role=role, branch_id=user.branch_id)


@dataclass(frozen=True)
class Scope:
    mode: ScopeMode
    branch_ids: FrozenSet[int] = field(default_factory=frozenset)
    owner_id: Optional[int] = None
    role: Optional[Role] = None
    # True when an explicit branch filter narrowed the actor's allowed set
    narrowed: bool = False

    @property
    def sorted_branch_ids(self) -> List[int]:
        return sorted(self.branch_ids)

    def can_see(self, branch_id: Optional[int], owner_id: Optional[int]) -> bool:
        """Visibility of a suggestion-like row (branch/owner may be NULL)."""
        if self.mode == ScopeMode.SYSTEM:
            if self.narrowed:
                return branch_id in self.branch_ids
            return branch_id is None or branch_id in self.branch_ids
        if self.mode == ScopeMode.BRANCH:
            return branch_id in self.branch_ids
        if owner_id is not None and owner_id != self.owner_id:
            return False
        return branch_id is None or branch_id in self.branch_ids

    def can_touch(self, branch_id: Optional[int], owner_id: Optional[int]) -> bool:
        """Access to a concrete lead/student record (no broadcast rows)."""
        if self.mode == ScopeMode.SYSTEM:
            return not self.narrowed or branch_id in self.branch_ids
        if self.mode == ScopeMode.BRANCH:
            return branch_id in self.branch_ids
        return owner_id is not None and owner_id == self.owner_id and branch_id in self.branch_ids

    def restrict(self, branch_id: int) -> "Scope":
        """Same actor, limited to one branch (used to generate per branch)."""
        if branch_id not in self.branch_ids:
            raise ForbiddenError()
        return Scope(mode=self.mode, branch_ids=frozenset({branch_id}), owner_id=self.owner_id,
                     role=self.role, narrowed=True)


def get_allowed_branch_ids(db: Session, actor: Actor) -> List[int]:
    """Active branches the actor may see, re-read from storage on every call."""
    if actor.role in SYSTEM_ROLES:
        rows = db.query(Branch.id).filter(Branch.is_active == True).order_by(Branch.id).all()
        return [r[0] for r in rows]

    ids = set()
    if actor.branch_id is not None:
        ids.add(actor.branch_id)
    for (branch_id,) in db.query(UserBranch.branch_id).filter(UserBranch.user_id == actor.user_id).all():
        ids.add(branch_id)
    if not ids:
        return []
    rows = db.query(Branch.id).filter(Branch.id.in_(ids), Branch.is_active == True).order_by(Branch.id).all()
    return [r[0] for r in rows]


def resolve_scope(db: Session, actor: Actor, requested_branch_id: Optional[int] = None) -> Scope:
    """
    Compute the actor's Scope, optionally narrowed to one requested branch.

    Raises ForbiddenError when the requested branch is outside the actor's
    allowed branches.
    """
    allowed = frozenset(get_allowed_branch_ids(db, actor))

    if requested_branch_id is not None and requested_branch_id not in allowed:
        raise ForbiddenError()
    narrowed_ids = frozenset({requested_branch_id}) if requested_branch_id is not None else allowed
    narrowed = requested_branch_id is not None

    if actor.role in SYSTEM_ROLES:
        return Scope(mode=ScopeMode.SYSTEM, branch_ids=narrowed_ids, role=actor.role, narrowed=narrowed)

    if actor.role in BRANCH_ROLES:
        if allowed:
            return Scope(mode=ScopeMode.BRANCH, branch_ids=narrowed_ids, role=actor.role, narrowed=narrowed)
        # A manager without any branch only sees their own records
        return Scope(mode=ScopeMode.OWNER, owner_id=actor.user_id, role=actor.role)

    if actor.role in OWNER_ROLES:
        return Scope(mode=ScopeMode.OWNER, branch_ids=narrowed_ids, owner_id=actor.user_id,
                     role=actor.role, narrowed=narrowed)

    raise ValidationError(f"Unsupported role: {actor.role}")


def resolve_write_branch(db: Session, actor: Actor, requested_branch_id: Optional[int] = None) -> Optional[int]:
    """
    Branch a new row is written to: the requested one (must be in scope), or
    the actor's first allowed branch. System roles may write branch-less rows.
    """
    if requested_branch_id is not None:
        resolve_scope(db, actor, requested_branch_id)
        return requested_branch_id
    if actor.role in SYSTEM_ROLES:
        return None
    allowed = get_allowed_branch_ids(db, actor)
    if not allowed:
        raise ForbiddenError()
    return allowed[0]


def suggestion_scope_clauses(scope: Scope, model) -> list:
    """SQLAlchemy filter clauses equivalent to Scope.can_see for a table with branch_id/owner_id."""
    branch_ids = scope.sorted_branch_ids
    if scope.mode == ScopeMode.SYSTEM:
        if scope.narrowed:
            return [model.branch_id.in_(branch_ids)]
        return [or_(model.branch_id.in_(branch_ids), model.branch_id.is_(None))]
    if scope.mode == ScopeMode.BRANCH:
        return [model.branch_id.in_(branch_ids)]
    return [
        or_(model.owner_id == scope.owner_id, model.owner_id.is_(None)),
        or_(model.branch_id.in_(branch_ids), model.branch_id.is_(None)),
    ]


def record_scope_clauses(scope: Scope, branch_col, owner_col=None) -> list:
    """
    Filter clauses equivalent to Scope.can_touch for business records.

    owner_col is the column holding the record's owner (for students that is
    the linked lead's owner). Tables without an owner column are invisible
    to OWNER scopes.
    """
    branch_ids = scope.sorted_branch_ids
    if scope.mode == ScopeMode.SYSTEM:
        return [branch_col.in_(branch_ids)] if scope.narrowed else []
    if scope.mode == ScopeMode.BRANCH:
        return [branch_col.in_(branch_ids)]
    if owner_col is None:
        return [false()]
    return [owner_col == scope.owner_id, branch_col.in_(branch_ids)]


def user_in_branch(user: User, branch_id: int) -> bool:
    """Home branch or an explicit membership."""
    if user.branch_id == branch_id:
        return True
    return any(m.branch_id == branch_id for m in user.memberships)


def parse_record_id(value: Any, name: str) -> Optional[int]:
    """
    Optional row id from an untyped payload: an int or a string of digits.
    Floats, booleans and anything else are rejected.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if not (text.isascii() and text.isdigit()):
            raise ValidationError(f"{name} must be an integer id")
        value = int(text)
    elif isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer id")
    if value <= 0:
        raise ValidationError(f"{name} must be a positive id")
    return value
