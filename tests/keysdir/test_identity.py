"""Tests for identity contexts."""

from __future__ import annotations

import os

import pytest

from authorized.keysdir import identity as identity_module
from authorized.keysdir.identity import (
    IdentityContext,
    ProcessIdentity,
    SwitchedIdentity,
    identity_for,
)
from authorized.provider import User


@pytest.fixture
def id_calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, object]]:
    """Record effective id changes instead of performing them."""
    calls: list[tuple[str, object]] = []
    monkeypatch.setattr(os, "geteuid", lambda: 0)
    monkeypatch.setattr(os, "getegid", lambda: 0)
    monkeypatch.setattr(os, "getgroups", lambda: [0])
    monkeypatch.setattr(os, "seteuid", lambda uid: calls.append(("seteuid", uid)))
    monkeypatch.setattr(os, "setegid", lambda gid: calls.append(("setegid", gid)))
    monkeypatch.setattr(os, "setgroups", lambda groups: calls.append(("setgroups", list(groups))))
    return calls


class TestProcessIdentity:
    """Tests for ProcessIdentity."""

    def test_assume_is_noop(self) -> None:
        identity = ProcessIdentity()

        with identity.assume():
            pass

        assert isinstance(identity, IdentityContext)


@pytest.mark.skipif(not hasattr(os, "seteuid"), reason="POSIX only")
class TestSwitchedIdentity:
    """Tests for SwitchedIdentity."""

    def test_switch_and_restore(self, id_calls: list[tuple[str, object]]) -> None:
        identity = SwitchedIdentity(uid=1000, gid=1000, groups=(1000, 27))

        with identity.assume():
            assert id_calls == [
                ("setgroups", [1000, 27]),
                ("setegid", 1000),
                ("seteuid", 1000),
            ]

        assert id_calls[3:] == [
            ("seteuid", 0),
            ("setegid", 0),
            ("setgroups", [0]),
        ]

    def test_restore_on_error(self, id_calls: list[tuple[str, object]]) -> None:
        identity = SwitchedIdentity(uid=1000, gid=1000)

        with pytest.raises(OSError):
            with identity.assume():
                raise OSError("denied")

        assert id_calls[-3:] == [
            ("seteuid", 0),
            ("setegid", 0),
            ("setgroups", [0]),
        ]

    def test_restore_when_switch_fails(
        self, id_calls: list[tuple[str, object]], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a half-done switch is rolled back."""

        def seteuid(uid: int) -> None:
            if uid == 1000:
                raise PermissionError("denied")
            id_calls.append(("seteuid", uid))

        monkeypatch.setattr(os, "seteuid", seteuid)

        with pytest.raises(PermissionError):
            with SwitchedIdentity(uid=1000, gid=1000).assume():
                pass

        assert id_calls == [
            ("setgroups", [1000]),
            ("setegid", 1000),
            ("seteuid", 0),
            ("setegid", 0),
            ("setgroups", [0]),
        ]

    def test_default_groups(self, id_calls: list[tuple[str, object]]) -> None:
        with SwitchedIdentity(uid=1000, gid=1001).assume():
            pass

        assert id_calls[0] == ("setgroups", [1001])


@pytest.mark.skipif(not hasattr(os, "geteuid"), reason="POSIX only")
class TestIdentityFor:
    """Tests for identity_for."""

    def test_switch_disabled(self) -> None:
        user = User(name="root", home_dir="/root")

        assert isinstance(identity_for(user, switch=False), ProcessIdentity)

    def test_not_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 1000)
        user = User(name="core", home_dir="/home/core")

        assert isinstance(identity_for(user), ProcessIdentity)

    def test_unknown_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        user = User(name="no-such-user-for-authorized-tests", home_dir="/nonexistent")

        assert isinstance(identity_for(user), ProcessIdentity)

    def test_root_target(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 0)

        assert isinstance(identity_for(User(name="root", home_dir="/root")), ProcessIdentity)

    def test_local_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        import pwd

        class Entry:
            pw_uid = 1500
            pw_gid = 1500

        monkeypatch.setattr(os, "geteuid", lambda: 0)
        monkeypatch.setattr(pwd, "getpwnam", lambda name: Entry())
        monkeypatch.setattr(identity_module.os, "getgrouplist", lambda name, gid: [gid, 10])

        identity = identity_for(User(name="core", home_dir="/home/core"))

        assert identity == SwitchedIdentity(uid=1500, gid=1500, groups=(1500, 10))
