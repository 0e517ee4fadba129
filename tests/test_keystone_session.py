from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from conftest import NOW, TOKEN_URL, FakeResponse, keystone_response, slow
from errors import AuthenticationError, NotSignedInError
import keystone_session
from keystone_session import SessionManager, is_expiring_soon, mask_value, parse_expiry
from settings import ConsoleSettings


def test_absent_expiry_is_always_expiring() -> None:
    assert is_expiring_soon(None, now=NOW) is True
    assert is_expiring_soon("", now=NOW) is True


def test_expiry_inside_skew_window_is_expiring() -> None:
    assert is_expiring_soon(NOW + timedelta(seconds=119), now=NOW) is True
    assert is_expiring_soon(NOW - timedelta(minutes=5), now=NOW) is True


def test_expiry_at_or_beyond_skew_window_is_not_expiring() -> None:
    assert is_expiring_soon(NOW + timedelta(seconds=120), now=NOW) is False
    assert is_expiring_soon(NOW + timedelta(hours=1), now=NOW) is False


def test_keystone_timestamp_strings_are_parsed() -> None:
    assert is_expiring_soon("2026-10-19T13:00:00.000000Z", now=NOW) is False
    assert is_expiring_soon("2026-10-19T12:01:00Z", now=NOW) is True
    # Naive timestamps are read as UTC
    assert is_expiring_soon("2026-10-19T13:00:00", now=NOW) is False


def test_unparseable_expiry_is_treated_as_expiring() -> None:
    assert is_expiring_soon("tomorrow-ish", now=NOW) is True


def test_custom_skew() -> None:
    assert is_expiring_soon(NOW + timedelta(seconds=200), skew_seconds=300, now=NOW) is True


def test_login_sends_project_scoped_password_auth(sessions, http) -> None:
    session = sessions.login("alice", "pw")

    call = http.calls_to("POST", TOKEN_URL)[0]
    auth = call["json"]["auth"]
    assert auth["identity"]["methods"] == ["password"]
    assert auth["identity"]["password"]["user"] == {
        "name": "alice",
        "domain": {"name": "Default"},
        "password": "pw",
    }
    assert auth["scope"]["project"] == {"name": "NT533.P21", "domain": {"name": "Default"}}
    assert call["timeout"] == 10.0

    assert session.token == "gAAAAA-token-1"
    assert session.user["name"] == "demo"
    assert session.project["id"] == "p-123"
    assert sessions.current is session


def test_signin_payload_shape(sessions) -> None:
    payload = sessions.login("alice", "pw").to_signin_payload()
    assert set(payload) == {"token", "catalog", "user", "project"}


def test_ensure_valid_logs_in_once_then_reuses_cache(sessions, http) -> None:
    first = sessions.ensure_valid()
    second = sessions.ensure_valid()

    assert first is second
    assert len(http.calls_to("POST", TOKEN_URL)) == 1


def test_ensure_valid_does_not_login_while_token_is_fresh(sessions, http, clock) -> None:
    sessions.ensure_valid()
    clock.advance(minutes=57)  # 180s left, outside the 120s window
    sessions.ensure_valid()
    assert len(http.calls_to("POST", TOKEN_URL)) == 1


def test_ensure_valid_refreshes_inside_skew_window(sessions, http, clock) -> None:
    old = sessions.ensure_valid()
    clock.advance(minutes=59)  # 60s left
    http.add("POST", TOKEN_URL, keystone_response(token="gAAAAA-token-2", expires_at=NOW + timedelta(hours=2)))

    new = sessions.ensure_valid()

    assert len(http.calls_to("POST", TOKEN_URL)) == 2
    assert new is not old
    assert new.token == "gAAAAA-token-2"


def test_login_replaces_all_cached_fields_together(sessions, http) -> None:
    sessions.login("alice", "pw")
    new_catalog = [{"type": "network", "endpoints": [{"interface": "public", "url": "https://n2.test"}]}]
    http.add("POST", TOKEN_URL, keystone_response(
        token="gAAAAA-token-2", expires_at=NOW + timedelta(hours=3), catalog=new_catalog,
    ))

    sessions.login("bob", "pw2")
    current = sessions.current

    assert current.token == "gAAAAA-token-2"
    assert current.catalog == new_catalog
    assert current.expires_at.startswith("2026-10-19T15:00:00")


def test_failed_login_keeps_previous_session(sessions, http) -> None:
    before = sessions.login("alice", "pw")
    http.add("POST", TOKEN_URL, FakeResponse(401, {"error": {"message": "The request you have made requires authentication."}}))

    with pytest.raises(AuthenticationError):
        sessions.login("alice", "wrong")

    assert sessions.current is before


def test_rejected_credentials_raise_authentication_error(sessions, http) -> None:
    http.add("POST", TOKEN_URL, FakeResponse(401, {"error": {"code": 401}}))
    with pytest.raises(AuthenticationError) as exc:
        sessions.login("alice", "wrong")
    assert "401" in exc.value.message


def test_unreachable_keystone_raises_authentication_error(sessions, http) -> None:
    http.add("POST", TOKEN_URL, requests.ConnectionError("connection refused"))
    with pytest.raises(AuthenticationError) as exc:
        sessions.login("alice", "pw")
    assert "unreachable" in exc.value.message


def test_missing_subject_token_header_is_rejected(sessions, http) -> None:
    http.add("POST", TOKEN_URL, FakeResponse(201, {"token": {"catalog": []}}))
    with pytest.raises(AuthenticationError):
        sessions.login("alice", "pw")
    assert sessions.current is None


def test_ensure_valid_without_credentials_fails_fast(http, clock) -> None:
    settings = ConsoleSettings(auth_url="https://keystone.test/v3")
    manager = SessionManager(settings, http=http, clock=clock)

    with pytest.raises(NotSignedInError):
        manager.ensure_valid()
    assert http.calls == []


def test_ensure_valid_reports_keystone_failure_as_not_signed_in(sessions, http) -> None:
    http.add("POST", TOKEN_URL, FakeResponse(500, {"error": "boom"}))
    with pytest.raises(NotSignedInError):
        sessions.ensure_valid()
    # No silent retry
    assert len(http.calls_to("POST", TOKEN_URL)) == 1


def test_ensure_valid_uses_supplied_credentials_provider(sessions, http) -> None:
    sessions.ensure_valid(lambda: ("carol", "pw3"))
    user = http.calls_to("POST", TOKEN_URL)[0]["json"]["auth"]["identity"]["password"]["user"]
    assert user["name"] == "carol"


def test_concurrent_refreshes_are_coalesced(sessions, http) -> None:
    http.add("POST", TOKEN_URL, slow(keystone_response(), delay=0.1))
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def _worker() -> None:
        barrier.wait()
        try:
            results.append(sessions.ensure_valid())
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert len(results) == workers
    assert len(http.calls_to("POST", TOKEN_URL)) == 1
    assert all(r is results[0] for r in results)


def test_mask_value_hides_tokens() -> None:
    assert mask_value("gAAAAABlongtoken") == "gA********en"
    assert mask_value("abc") == "********"


def test_expiry_with_uneven_fractional_seconds_is_parsed() -> None:
    assert parse_expiry("2026-10-19T13:00:00.5Z") == datetime(2026, 10, 19, 13, 0, 0, 500000, tzinfo=timezone.utc)
    assert parse_expiry("2026-10-19T13:00:00.1234567Z") == datetime(2026, 10, 19, 13, 0, 0, 123456, tzinfo=timezone.utc)
    assert is_expiring_soon("2026-10-19T13:00:00.12Z", now=NOW) is False


def test_unparseable_expiry_is_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="osconsole.session"):
        assert parse_expiry("tomorrow-ish") is None
    assert "Unparseable token expiry" in caplog.text


def test_concurrent_first_lookups_share_one_manager(monkeypatch) -> None:
    monkeypatch.setattr(keystone_session, "_manager", None)
    built = []
    real_init = SessionManager.__init__

    def slow_init(self, *args, **kwargs):
        built.append(self)
        time.sleep(0.05)
        real_init(self, *args, **kwargs)

    monkeypatch.setattr(SessionManager, "__init__", slow_init)

    results = []
    threads = [threading.Thread(target=lambda: results.append(keystone_session.get_session_manager()))
               for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(built) == 1
    assert all(m is results[0] for m in results)
