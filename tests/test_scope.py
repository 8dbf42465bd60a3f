"""
Scope resolution tests.

Guards against:
1. Branch filters that escape the actor's allowed branches
2. OWNER actors seeing or touching another owner's records
3. Inactive branches leaking into SYSTEM scopes
4. Ids from JSON strings kept as strings, or floats and booleans accepted as ids
"""
import pytest

from kpi_coach.models.enums import Role, ScopeMode
from kpi_coach.models.user import UserBranch
from kpi_coach.services.errors import ForbiddenError, ValidationError
from kpi_coach.services.scope import (
    Actor,
    Scope,
    get_allowed_branch_ids,
    parse_record_id,
    resolve_scope,
    resolve_write_branch,
    user_in_branch,
)


# ---------------------------------------------------------------------------
# resolve_scope
# ---------------------------------------------------------------------------

def test_admin_gets_system_scope_over_active_branches(db, make, as_actor):
    a = make.branch()
    b = make.branch()
    make.branch(is_active=False)
    admin = make.user("admin")

    scope = resolve_scope(db, as_actor(admin))

    assert scope.mode == ScopeMode.SYSTEM
    assert scope.branch_ids == frozenset({a.id, b.id})
    assert not scope.narrowed


def test_admin_branch_filter_narrows_scope(db, make, as_actor):
    a = make.branch()
    make.branch()
    admin = make.user("admin")

    scope = resolve_scope(db, as_actor(admin), a.id)

    assert scope.branch_ids == frozenset({a.id})
    assert scope.narrowed


def test_admin_filter_on_inactive_branch_is_forbidden(db, make, as_actor):
    closed = make.branch(is_active=False)
    admin = make.user("admin")

    with pytest.raises(ForbiddenError):
        resolve_scope(db, as_actor(admin), closed.id)


def test_manager_scope_includes_memberships(db, make, as_actor):
    home = make.branch()
    extra = make.branch()
    make.branch()
    manager = make.user("manager", branch=home, extra_branches=[extra])

    scope = resolve_scope(db, as_actor(manager))

    assert scope.mode == ScopeMode.BRANCH
    assert scope.branch_ids == frozenset({home.id, extra.id})


def test_manager_filter_outside_branches_is_forbidden(db, make, as_actor):
    home = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=home)

    with pytest.raises(ForbiddenError):
        resolve_scope(db, as_actor(manager), other.id)


def test_manager_without_branch_falls_back_to_owner_scope(db, make, as_actor):
    manager = make.user("manager")

    scope = resolve_scope(db, as_actor(manager))

    assert scope.mode == ScopeMode.OWNER
    assert scope.owner_id == manager.id
    assert scope.branch_ids == frozenset()


def test_telesales_gets_owner_scope_limited_to_branch(db, make, as_actor):
    home = make.branch()
    make.branch()
    rep = make.user("telesales", branch=home)

    scope = resolve_scope(db, as_actor(rep))

    assert scope.mode == ScopeMode.OWNER
    assert scope.owner_id == rep.id
    assert scope.branch_ids == frozenset({home.id})


def test_scope_is_recomputed_after_membership_change(db, make, as_actor):
    home = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=home)
    actor = as_actor(manager)
    assert get_allowed_branch_ids(db, actor) == [home.id]

    db.add(UserBranch(user_id=manager.id, branch_id=other.id))
    db.commit()

    assert resolve_scope(db, actor).branch_ids == frozenset({home.id, other.id})


def test_unknown_role_is_forbidden(make):
    user = make.user("accountant")

    with pytest.raises(ForbiddenError):
        Actor.from_user(user)


# ---------------------------------------------------------------------------
# Visibility predicates
# ---------------------------------------------------------------------------

def test_owner_scope_sees_broadcast_and_own_rows_only():
    scope = Scope(mode=ScopeMode.OWNER, branch_ids=frozenset({1}), owner_id=7, role=Role.TELESALES)

    assert scope.can_see(1, None)
    assert scope.can_see(1, 7)
    assert scope.can_see(None, None)
    assert not scope.can_see(1, 8)
    assert not scope.can_see(2, None)


def test_owner_scope_touches_only_own_records():
    scope = Scope(mode=ScopeMode.OWNER, branch_ids=frozenset({1}), owner_id=7, role=Role.TELESALES)

    assert scope.can_touch(1, 7)
    assert not scope.can_touch(1, None)
    assert not scope.can_touch(1, 8)
    assert not scope.can_touch(2, 7)


def test_branch_scope_excludes_branchless_rows():
    scope = Scope(mode=ScopeMode.BRANCH, branch_ids=frozenset({1, 2}), role=Role.MANAGER)

    assert scope.can_see(2, 99)
    assert not scope.can_see(None, None)
    assert not scope.can_see(3, None)


def test_system_scope_sees_branchless_rows_unless_narrowed():
    wide = Scope(mode=ScopeMode.SYSTEM, branch_ids=frozenset({1, 2}), role=Role.ADMIN)
    narrow = Scope(mode=ScopeMode.SYSTEM, branch_ids=frozenset({1}), role=Role.ADMIN, narrowed=True)

    assert wide.can_see(None, None)
    assert wide.can_touch(5, None)
    assert not narrow.can_see(None, None)
    assert not narrow.can_touch(2, None)


def test_restrict_rejects_branch_outside_scope():
    scope = Scope(mode=ScopeMode.BRANCH, branch_ids=frozenset({1}), role=Role.MANAGER)

    assert scope.restrict(1).branch_ids == frozenset({1})
    with pytest.raises(ForbiddenError):
        scope.restrict(2)


# ---------------------------------------------------------------------------
# Write branch
# ---------------------------------------------------------------------------

def test_write_branch_defaults(db, make, as_actor):
    home = make.branch()
    admin = make.user("admin")
    rep = make.user("telesales", branch=home)

    assert resolve_write_branch(db, as_actor(admin)) is None
    assert resolve_write_branch(db, as_actor(rep)) == home.id


def test_write_branch_without_any_branch_is_forbidden(db, make, as_actor):
    rep = make.user("telesales")

    with pytest.raises(ForbiddenError):
        resolve_write_branch(db, as_actor(rep))


def test_user_in_branch_counts_memberships(make):
    home = make.branch()
    extra = make.branch()
    other = make.branch()
    manager = make.user("manager", branch=home, extra_branches=[extra])

    assert user_in_branch(manager, home.id)
    assert user_in_branch(manager, extra.id)
    assert not user_in_branch(manager, other.id)


# ---------------------------------------------------------------------------
# Payload ids
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("value,expected", [(7, 7), ("7", 7), (" 12 ", 12), (None, None), ("", None)])
def test_parse_record_id_normalizes(value, expected):
    assert parse_record_id(value, "branch_id") == expected


@pytest.mark.parametrize("value", ["abc", "1.0", 1.0, True, False, 0, -2, "-2", "٣", [1]])
def test_parse_record_id_rejects(value):
    with pytest.raises(ValidationError, match="branch_id"):
        parse_record_id(value, "branch_id")
