"""
Tests for MirrorHooks dispatch and repo custom hook scripts.
"""

from __future__ import annotations

import stat
from unittest import mock

import pytest

from swarm_mirror import hooks as hooks_module
from swarm_mirror.errors import LockProtocolError, RemoteOperationError
from swarm_mirror.hooks import MirrorHooks, changes_to_refspecs
from swarm_mirror.mirror.custom_hooks import ACTOR_ENV, CustomHooks, Hooks
from swarm_mirror.mirror.locks import WRITE_LOCK_SOCKET_ENV
from swarm_mirror.mirror.push import MirrorPush
from swarm_mirror.mirror.refs import ZERO_SHA

A = "a" * 40
B = "b" * 40
CHANGES = f"{A} {B} refs/heads/main\n{A} {ZERO_SHA} refs/heads/old\n"


def _write_hook(repo, name, body):
    hook_dir = repo / "custom_hooks"
    hook_dir.mkdir(exist_ok=True)
    path = hook_dir / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def inner():
    hooks = mock.create_autospec(Hooks, instance=True)
    hooks.update.return_value = True
    hooks.pre_receive.return_value = True
    hooks.post_receive.return_value = True
    return hooks


@pytest.fixture
def pusher():
    return mock.create_autospec(MirrorPush, instance=True)


class TestChangesToRefspecs:

    def test_updates_and_deletes(self):
        assert changes_to_refspecs(CHANGES) == [f"{B}:refs/heads/main", ":refs/heads/old"]


class TestPreReceive:

    def test_pushes_to_mirror(self, inner, pusher, mirrored_repo, monkeypatch):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, "/tmp/write_lock.sock")
        hooks = MirrorHooks(inner, pusher)
        assert hooks.pre_receive(CHANGES, str(mirrored_repo)) is True

        assert inner.update.call_count == 2
        inner.update.assert_any_call("refs/heads/main", A, B, str(mirrored_repo))
        inner.pre_receive.assert_called_once_with(CHANGES, str(mirrored_repo))
        pusher.push.assert_called_once_with(
            [f"{B}:refs/heads/main", ":refs/heads/old"], str(mirrored_repo), receive_pack=True
        )

    def test_outside_receive_pack_uses_file_lock(self, inner, pusher, mirrored_repo, monkeypatch):
        monkeypatch.delenv(WRITE_LOCK_SOCKET_ENV, raising=False)
        assert MirrorHooks(inner, pusher).pre_receive(CHANGES, str(mirrored_repo)) is True
        assert pusher.push.call_args.kwargs == {"receive_pack": False}

    def test_inner_update_rejection_stops_push(self, inner, pusher, mirrored_repo):
        inner.update.return_value = False
        assert MirrorHooks(inner, pusher).pre_receive(CHANGES, str(mirrored_repo)) is False
        inner.pre_receive.assert_not_called()
        pusher.push.assert_not_called()

    def test_inner_pre_receive_rejection_stops_push(self, inner, pusher, mirrored_repo):
        inner.pre_receive.return_value = False
        assert MirrorHooks(inner, pusher).pre_receive(CHANGES, str(mirrored_repo)) is False
        pusher.push.assert_not_called()

    def test_mirror_rejection_rejects_push(self, inner, pusher, mirrored_repo):
        pusher.push.side_effect = RemoteOperationError("rejected")
        assert MirrorHooks(inner, pusher).pre_receive(CHANGES, str(mirrored_repo)) is False

    def test_malformed_changes(self, inner, pusher, mirrored_repo):
        assert MirrorHooks(inner, pusher).pre_receive("garbage\n", str(mirrored_repo)) is False
        pusher.push.assert_not_called()

    def test_update_is_a_noop(self, inner, pusher):
        assert MirrorHooks(inner, pusher).update("refs/heads/main", A, B, "/nowhere") is True
        inner.update.assert_not_called()


class TestPostReceive:

    def test_unlocks_then_delegates(self, inner, pusher, mirrored_repo):
        with mock.patch.object(hooks_module, "lock_socket") as lock_socket:
            assert MirrorHooks(inner, pusher).post_receive(CHANGES, str(mirrored_repo)) is True
        lock_socket.assert_called_once_with("UNLOCK")
        inner.post_receive.assert_called_once_with(CHANGES, str(mirrored_repo), True)

    def test_unmirrored_skips_unlock(self, inner, pusher, bare_repo):
        with mock.patch.object(hooks_module, "lock_socket") as lock_socket:
            MirrorHooks(inner, pusher).post_receive(CHANGES, str(bare_repo))
        lock_socket.assert_not_called()

    def test_outside_receive_pack_skips_unlock(self, inner, pusher, mirrored_repo):
        with mock.patch.object(hooks_module, "lock_socket") as lock_socket:
            MirrorHooks(inner, pusher).post_receive(CHANGES, str(mirrored_repo), receive_pack=False)
        lock_socket.assert_not_called()

    def test_unlock_failure_still_delegates(self, inner, pusher, mirrored_repo):
        with mock.patch.object(hooks_module, "lock_socket", side_effect=LockProtocolError("gone")):
            MirrorHooks(inner, pusher).post_receive(CHANGES, str(mirrored_repo))
        inner.post_receive.assert_called_once()


class TestCustomHooks:

    def test_missing_hook_passes(self, bare_repo):
        assert CustomHooks(echo=False).pre_receive(CHANGES, str(bare_repo)) is True

    def test_hook_gets_changes_on_stdin(self, bare_repo, tmp_path):
        out = tmp_path / "seen.txt"
        _write_hook(bare_repo, "pre-receive", f"cat > {out}\n")

        assert CustomHooks(echo=False).pre_receive(CHANGES, str(bare_repo)) is True
        assert out.read_text() == CHANGES

    def test_failing_hook_rejects(self, bare_repo):
        _write_hook(bare_repo, "update", "echo 'no pushes on fridays'\nexit 1\n")
        assert CustomHooks(echo=False).update("refs/heads/main", A, B, str(bare_repo)) is False

    def test_update_gets_arguments(self, bare_repo, tmp_path):
        out = tmp_path / "args.txt"
        _write_hook(bare_repo, "update", f'echo "$1 $2 $3" > {out}\n')

        CustomHooks(echo=False).update("refs/heads/main", A, B, str(bare_repo))
        assert out.read_text().strip() == f"refs/heads/main {A} {B}"

    def test_notify_passes_identity(self, bare_repo, tmp_path):
        out = tmp_path / "actor.txt"
        _write_hook(bare_repo, "post-receive", f'echo "${ACTOR_ENV}" > {out}\n')

        assert CustomHooks(echo=False).notify(CHANGES, str(bare_repo), "system-user") is True
        assert out.read_text().strip() == "system-user"

    def test_output_echoed(self, bare_repo, capsys):
        _write_hook(bare_repo, "post-receive", "echo hello from hook\n")
        CustomHooks().post_receive(CHANGES, str(bare_repo))
        assert "hello from hook" in capsys.readouterr().out
