"""Tests for the redis payout mutex."""

from unittest.mock import MagicMock, patch

from fieldsy.core import payout_lock


class TestPayoutLock:
    def test_disabled_lock_always_acquires(self, monkeypatch):
        monkeypatch.setattr(payout_lock.settings, "payout_lock_enabled", False)
        with patch.object(payout_lock, "_get_sync_redis") as get_redis:
            assert payout_lock.acquire_payout_lock("b1") is True
        get_redis.assert_not_called()

    def test_fails_open_without_redis(self, monkeypatch):
        monkeypatch.setattr(payout_lock.settings, "payout_lock_enabled", True)
        with patch.object(payout_lock, "_get_sync_redis", return_value=None):
            assert payout_lock.acquire_payout_lock("b1") is True

    def test_blocked_when_key_already_set(self, monkeypatch):
        monkeypatch.setattr(payout_lock.settings, "payout_lock_enabled", True)
        client = MagicMock()
        client.set.return_value = None
        with patch.object(payout_lock, "_get_sync_redis", return_value=client):
            assert payout_lock.acquire_payout_lock("b1") is False
        client.set.assert_called_once()
        assert client.set.call_args.args[0] == "fieldsy:lock:payout:b1"
        assert client.set.call_args.kwargs["nx"] is True

    def test_redis_error_fails_open(self, monkeypatch):
        monkeypatch.setattr(payout_lock.settings, "payout_lock_enabled", True)
        client = MagicMock()
        client.set.side_effect = ConnectionError("redis down")
        with patch.object(payout_lock, "_get_sync_redis", return_value=client):
            assert payout_lock.acquire_payout_lock("b1") is True

    def test_context_manager_releases_only_when_acquired(self, monkeypatch):
        monkeypatch.setattr(payout_lock.settings, "payout_lock_enabled", True)
        client = MagicMock()
        client.set.return_value = True
        with patch.object(payout_lock, "_get_sync_redis", return_value=client):
            with payout_lock.payout_lock_sync("b1") as acquired:
                assert acquired is True
            client.delete.assert_called_once_with("fieldsy:lock:payout:b1")

            client.reset_mock()
            client.set.return_value = False
            with payout_lock.payout_lock_sync("b1") as acquired:
                assert acquired is False
            client.delete.assert_not_called()
