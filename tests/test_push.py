"""
Tests for MirrorPush.

The mirror remote is never contacted: `git push` and the `@wait`
clones are mocked, while the repos, their remotes and the lock files
are real.
"""

from __future__ import annotations

from unittest import mock

import pytest

from conftest import git_output
from swarm_mirror.config.models import GitFusionSettings
from swarm_mirror.errors import ConfigurationError, RemoteOperationError
from swarm_mirror.mirror import push as push_module
from swarm_mirror.mirror.locks import NOT_MIRRORED, WRITE_LOCK_SOCKET_ENV, LockCoordinator
from swarm_mirror.mirror.push import MirrorPush, collapse_progress

SHA = "1" * 40
REFSPEC = f"{SHA}:refs/heads/main"


def _pusher(settings, coordinator=None, user="alice"):
    return MirrorPush(
        coordinator=coordinator or LockCoordinator(),
        settings=settings,
        user_resolver=lambda: user,
        echo=lambda line: None,
    )


class TestNothingToMirror:

    def test_unmirrored_repo(self, bare_repo, settings):
        coordinator = mock.create_autospec(LockCoordinator, instance=True)
        callback = mock.Mock()

        with mock.patch.object(push_module, "popen") as popen:
            result = _pusher(settings, coordinator).push([REFSPEC], bare_repo, callback=callback)

        assert result == []
        popen.assert_not_called()
        coordinator.write_lock.assert_not_called()
        callback.assert_called_once()
        assert callback.call_args[0][1] == []

    def test_inactive_refs_take_no_lock(self, mirrored_repo, settings):
        (mirrored_repo / "mirror_refs.active").write_text("refs/heads/release/*\n")
        coordinator = mock.create_autospec(LockCoordinator, instance=True)
        resolver = mock.Mock(return_value=[])

        with mock.patch.object(push_module, "popen") as popen:
            result = _pusher(settings, coordinator).push([REFSPEC], mirrored_repo, refs_resolver=resolver)

        assert result == []
        resolver.assert_called_once()
        popen.assert_not_called()
        coordinator.write_lock.assert_not_called()

    def test_resolver_must_be_callable(self, mirrored_repo, settings):
        with pytest.raises(TypeError):
            _pusher(settings).push([REFSPEC], mirrored_repo, refs_resolver="nope")


class TestPush:

    def test_push_under_write_lock(self, mirrored_repo, settings):
        seen_locked = []

        def _git(cmd, cwd, **kwargs):
            seen_locked.append(LockCoordinator().write_locked(mirrored_repo))
            return "Everything up-to-date\n", 0

        callback = mock.Mock()
        with mock.patch.object(push_module, "popen", side_effect=_git) as popen:
            result = _pusher(settings).push([REFSPEC], mirrored_repo, callback=callback)

        assert result == [REFSPEC]
        assert seen_locked == [True]
        assert LockCoordinator().write_locked(mirrored_repo) is False
        callback.assert_called_once()

        cmd = popen.call_args[0][0]
        assert cmd == ["git", "-c", "http.sslVerify=false", "push", "mirror", "--", REFSPEC]

    def test_rejected_push_raises_and_unlocks(self, mirrored_repo, settings):
        callback = mock.Mock()
        with mock.patch.object(push_module, "popen", return_value=("! [rejected] main (fetch first)\n", 1)):
            with pytest.raises(RemoteOperationError, match="rejected"):
                _pusher(settings).push([REFSPEC], mirrored_repo, callback=callback)

        callback.assert_not_called()
        assert LockCoordinator().write_locked(mirrored_repo) is False

    def test_unknown_mirror_host(self, mirrored_repo):
        other = GitFusionSettings({"default": {"url": "https://other.example.com"}})
        with mock.patch.object(push_module, "popen") as popen:
            with pytest.raises(ConfigurationError):
                _pusher(other).push([REFSPEC], mirrored_repo)
        popen.assert_not_called()

    def test_resolver_runs_inside_lock(self, mirrored_repo, settings):
        seen_locked = []

        def _resolve(repo, refs):
            seen_locked.append(LockCoordinator().write_locked(repo.path))
            return [f"{'2' * 40}:refs/heads/main"]

        with mock.patch.object(push_module, "popen", return_value=("", 0)) as popen:
            result = _pusher(settings).push([REFSPEC], mirrored_repo, refs_resolver=_resolve)

        assert seen_locked == [True]
        assert result == [f"{'2' * 40}:refs/heads/main"]
        assert popen.call_args[0][0][-1] == f"{'2' * 40}:refs/heads/main"

    def test_resolver_emptying_refs_skips_push(self, mirrored_repo, settings):
        callback = mock.Mock()
        with mock.patch.object(push_module, "popen") as popen:
            result = _pusher(settings).push(
                [REFSPEC], mirrored_repo, refs_resolver=lambda repo, refs: [], callback=callback
            )
        assert result == []
        popen.assert_not_called()
        callback.assert_called_once()
        assert LockCoordinator().write_locked(mirrored_repo) is False


class TestWaitForPush:

    def test_polls_until_complete(self, mirrored_repo, settings):
        push_output = "remote: Commencing push 12 processing...\n"
        replies = [
            ("Waiting for push 12...\nfatal: repository not found\n", "Waiting for push 12...\n", 128),
            ("Push 12 completed successfully\n", "Push 12 completed successfully\n", 128),
        ]
        with mock.patch.object(push_module, "popen", return_value=(push_output, 0)):
            with mock.patch.object(push_module, "clone", side_effect=replies) as clone:
                result = _pusher(settings).push([REFSPEC], mirrored_repo)

        assert result == [REFSPEC]
        assert clone.call_count == 2
        assert clone.call_args[0][0] == "https://gf.example.com/@wait@project@12"

    def test_unexpected_reply_fails(self, mirrored_repo, settings):
        push_output = "Commencing push 3 processing...\n"
        with mock.patch.object(push_module, "popen", return_value=(push_output, 0)):
            with mock.patch.object(push_module, "clone", return_value=("Push 3 failed: conflict\n", "", 128)):
                with pytest.raises(RemoteOperationError, match="conflict"):
                    _pusher(settings).push([REFSPEC], mirrored_repo)

        assert LockCoordinator().write_locked(mirrored_repo) is False


class TestForUser:

    @pytest.fixture
    def enforcing(self):
        return GitFusionSettings({"default": {"url": "https://gf.example.com", "enforce_permissions": True}})

    def test_acting_user_added(self, mirrored_repo, enforcing):
        with mock.patch.object(push_module, "popen", return_value=("", 0)):
            _pusher(enforcing, user="alice").push([REFSPEC], mirrored_repo)
        assert git_output(mirrored_repo, "config", "remote.mirror.url") == (
            "https://gf.example.com/project@foruser=alice"
        )

    def test_no_user_clears_foruser(self, mirrored_repo, enforcing):
        with mock.patch.object(push_module, "popen", return_value=("", 0)):
            _pusher(enforcing, user="alice").push([REFSPEC], mirrored_repo)
            _pusher(enforcing, user=None).push([REFSPEC], mirrored_repo)
        assert git_output(mirrored_repo, "config", "remote.mirror.url") == "https://gf.example.com/project"

    def test_not_enforced_clears_foruser(self, mirrored_repo, settings):
        with mock.patch.object(push_module, "popen", return_value=("", 0)):
            _pusher(settings, user="alice").push([REFSPEC], mirrored_repo)
        assert git_output(mirrored_repo, "config", "remote.mirror.url") == "https://gf.example.com/project"


class TestReceivePack:

    def test_requires_lock_socket(self, mirrored_repo, settings, monkeypatch):
        monkeypatch.delenv(WRITE_LOCK_SOCKET_ENV, raising=False)
        with pytest.raises(ConfigurationError, match="is required for receive_pack"):
            _pusher(settings).push([REFSPEC], mirrored_repo, receive_pack=True)

    def test_mirrored_needs_real_socket(self, mirrored_repo, settings, monkeypatch, tmp_path):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, str(tmp_path / "nothing-here"))
        with pytest.raises(ConfigurationError, match="is not a valid socket"):
            _pusher(settings).push([REFSPEC], mirrored_repo, receive_pack=True)

    def test_unmirrored_rejects_junk(self, bare_repo, settings, monkeypatch):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, "/tmp/junk")
        with pytest.raises(ConfigurationError, match="is invalid"):
            _pusher(settings).push([REFSPEC], bare_repo, receive_pack=True)

    def test_unmirrored_accepts_sentinel(self, bare_repo, settings, monkeypatch):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, NOT_MIRRORED)
        assert _pusher(settings).push([REFSPEC], bare_repo, receive_pack=True) == []

    def test_success_leaves_lock_for_post_receive(self, mirrored_repo, settings, monkeypatch):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, "/tmp/lock.sock")
        coordinator = mock.create_autospec(LockCoordinator, instance=True)

        with mock.patch.object(push_module, "_is_socket", return_value=True):
            with mock.patch.object(push_module, "popen", return_value=("", 0)):
                _pusher(settings, coordinator).push([REFSPEC], mirrored_repo, receive_pack=True)

        coordinator.write_lock.assert_called_once_with(str(mirrored_repo.resolve()), True)
        coordinator.write_unlock.assert_not_called()

    def test_failure_unlocks_through_socket(self, mirrored_repo, settings, monkeypatch):
        monkeypatch.setenv(WRITE_LOCK_SOCKET_ENV, "/tmp/lock.sock")
        coordinator = mock.create_autospec(LockCoordinator, instance=True)

        with mock.patch.object(push_module, "_is_socket", return_value=True):
            with mock.patch.object(push_module, "popen", return_value=("denied\n", 1)):
                with pytest.raises(RemoteOperationError):
                    _pusher(settings, coordinator).push([REFSPEC], mirrored_repo, receive_pack=True)

        coordinator.write_unlock.assert_called_once_with(str(mirrored_repo.resolve()), use_socket=True)


class TestCollapseProgress:

    def test_keeps_last_line_per_label(self):
        output = (
            "Perforce:  10% ( 1/10) Copying changelists...\n"
            "Perforce:  50% ( 5/10) Copying changelists...\n"
            "Perforce: 100% (10/10) Copying changelists...\n"
            "Done\n"
        )
        assert collapse_progress(output) == "Perforce: 100% (10/10) Copying changelists...\nDone\n"

    def test_other_output_untouched(self):
        assert collapse_progress("To mirror\n   abc..def  main -> main\n") == "To mirror\n   abc..def  main -> main\n"
