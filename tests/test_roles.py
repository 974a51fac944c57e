"""
tests/test_roles.py -- Monotonic role assignment through RoleService.

Covers:
  - unset role takes whatever is requested first
  - MEMBER -> ORGANIZER elevation; ORGANIZER -> MEMBER answered, not applied
  - InvalidRole raised before the store is touched
  - unknown user -> Unauthorized; store failure -> DependencyUnavailable
  - apply_role_intent(): unusable preference ignored, usable one applied
  - two racing elevations: one change, both see ORGANIZER, readers never
    observe a role outside {MEMBER, ORGANIZER}
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import Role
from auth.roles import RoleChange, RoleService
from core.errors import DependencyUnavailable, InvalidRole, Unauthorized
from tests.conftest import create_user


class TestSetRole:
    def test_unset_role_takes_member(self, store):
        uid = create_user(store, role=None)
        assert store.get_role(uid) is None
        assert RoleService(store).set_role(uid, Role.MEMBER) == RoleChange(Role.MEMBER, True)
        assert store.get_by_id(uid).role is Role.MEMBER
        assert store.get_role(uid) is Role.MEMBER
        assert store.get_role("missing") is None

    def test_unset_role_takes_organizer(self, store):
        uid = create_user(store, role=None)
        assert RoleService(store).set_role(uid, "organizer") == RoleChange(Role.ORGANIZER, True)

    def test_member_elevates_to_organizer(self, store):
        uid = create_user(store, role=Role.MEMBER)
        change = RoleService(store).set_role(uid, Role.ORGANIZER)
        assert change == RoleChange(Role.ORGANIZER, True)
        assert store.get_by_id(uid).role is Role.ORGANIZER

    def test_organizer_downgrade_is_rejected_silently(self, store):
        uid = create_user(store, role=Role.ORGANIZER)
        change = RoleService(store).set_role(uid, Role.MEMBER)
        assert change == RoleChange(Role.ORGANIZER, False)
        assert store.get_by_id(uid).role is Role.ORGANIZER

    def test_same_role_is_noop(self, store):
        uid = create_user(store, role=Role.MEMBER)
        assert RoleService(store).set_role(uid, Role.MEMBER) == RoleChange(Role.MEMBER, False)

    @pytest.mark.parametrize("bad", ["ADMIN", "", None, 3, "organiser"])
    def test_invalid_role_leaves_store_untouched(self, store, bad):
        uid = create_user(store, role=Role.MEMBER)
        with pytest.raises(InvalidRole):
            RoleService(store).set_role(uid, bad)
        assert store.get_by_id(uid).role is Role.MEMBER

    def test_invalid_role_never_reaches_store(self):
        fake = MagicMock()
        with pytest.raises(InvalidRole):
            RoleService(fake).set_role("u1", "ADMIN")
        fake.apply_role.assert_not_called()

    def test_unknown_user(self, store):
        with pytest.raises(Unauthorized):
            RoleService(store).set_role("missing", Role.MEMBER)

    def test_store_failure_maps_to_dependency_unavailable(self):
        fake = MagicMock()
        fake.apply_role.side_effect = OperationalError("UPDATE users", {}, Exception("database is locked"))
        with pytest.raises(DependencyUnavailable) as exc_info:
            RoleService(fake).set_role("u1", Role.ORGANIZER)
        assert exc_info.value.status_code == 503


class TestApplyRoleIntent:
    @pytest.mark.parametrize("raw", [None, "", "ADMIN", "root"])
    def test_unusable_intent_is_ignored(self, store, raw):
        uid = create_user(store, role=None)
        assert RoleService(store).apply_role_intent(uid, raw) is None
        assert store.get_by_id(uid).role is None

    def test_intent_goes_through_monotonic_rule(self, store):
        uid = create_user(store, role=Role.ORGANIZER)
        change = RoleService(store).apply_role_intent(uid, " member ")
        assert change == RoleChange(Role.ORGANIZER, False)

    def test_intent_elevates(self, store):
        uid = create_user(store, role=Role.MEMBER)
        assert RoleService(store).apply_role_intent(uid, "ORGANIZER") == RoleChange(Role.ORGANIZER, True)


class TestConcurrentElevation:
    def test_racing_elevations_and_reader(self, file_store):
        uid = create_user(file_store, role=Role.MEMBER)
        service = RoleService(file_store)
        barrier = threading.Barrier(2)
        results: list[RoleChange] = []
        errors: list[BaseException] = []
        observed: set[object] = set()
        done = threading.Event()

        def elevate() -> None:
            try:
                barrier.wait()
                results.append(service.set_role(uid, Role.ORGANIZER))
            except BaseException as exc:  # surfaced by the assertion below
                errors.append(exc)

        def read() -> None:
            while not done.is_set():
                observed.add(file_store.get_by_id(uid).role)

        reader = threading.Thread(target=read)
        writers = [threading.Thread(target=elevate) for _ in range(2)]
        reader.start()
        for w in writers:
            w.start()
        for w in writers:
            w.join(timeout=30)
        done.set()
        reader.join(timeout=30)

        assert errors == []
        assert [r.effective for r in results] == [Role.ORGANIZER, Role.ORGANIZER]
        assert sorted(r.changed for r in results) == [False, True]
        assert observed <= {Role.MEMBER, Role.ORGANIZER}
        assert file_store.get_by_id(uid).role is Role.ORGANIZER

    def test_elevation_racing_downgrade_never_lands_on_member(self, file_store):
        uid = create_user(file_store, role=Role.MEMBER)
        service = RoleService(file_store)
        barrier = threading.Barrier(2)

        def run(role: Role) -> None:
            barrier.wait()
            service.set_role(uid, role)

        threads = [threading.Thread(target=run, args=(r,)) for r in (Role.ORGANIZER, Role.MEMBER)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert file_store.get_by_id(uid).role is Role.ORGANIZER
