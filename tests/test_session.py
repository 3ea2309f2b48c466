import pytest

from database import DocumentStore, owner_only, user_path
from events import PERMISSION_ERROR
from session import AuthSession, SessionState, resolve_redirect, state_for


@pytest.mark.parametrize("state,path,expected", [
    (SessionState.LOADING, "/dashboard", None),
    (SessionState.UNAUTHENTICATED, "/dashboard", "/login"),
    (SessionState.UNAUTHENTICATED, "/dashboard/settings", "/login"),
    (SessionState.UNAUTHENTICATED, "/login", None),
    (SessionState.UNAUTHENTICATED, "/signup", None),
    (SessionState.UNAUTHENTICATED, "/verify-email", "/login"),
    (SessionState.UNVERIFIED, "/dashboard", "/verify-email"),
    (SessionState.UNVERIFIED, "/verify-email", None),
    (SessionState.UNVERIFIED, "/forgot-password", None),
    (SessionState.VERIFIED, "/login", "/dashboard"),
    (SessionState.VERIFIED, "/verify-email", "/dashboard"),
    (SessionState.VERIFIED, "/dashboard", None),
])
def test_resolve_redirect(state, path, expected):
    assert resolve_redirect(state, path) == expected


def test_state_for():
    assert state_for(None) == SessionState.UNAUTHENTICATED
    assert state_for({"email_verified": False}) == SessionState.UNVERIFIED
    assert state_for({"email_verified": True}) == SessionState.VERIFIED


def make_user(store, email, verified=True, **profile):
    uid = store.create_user({
        "email": email, "password_hash": "x", "email_verified": verified, "income": 0, **profile,
    })
    return store.find_user(uid)


def test_session_loads_profile_for_identity(store, errors):
    user = make_user(store, "ana@spendsense.io", display_name="Ana", income=3000)
    changes = []
    session = AuthSession(store, errors, on_change=lambda s: changes.append(s.state))

    session.observe(user)

    assert session.state == SessionState.VERIFIED
    assert session.profile["income"] == 3000
    assert session.profile["display_name"] == "Ana"
    assert "password_hash" not in session.profile
    assert changes == [SessionState.VERIFIED]


def test_profile_updates_are_pushed(store, errors):
    user = make_user(store, "ana@spendsense.io")
    session = AuthSession(store, errors)
    session.observe(user)
    uid = str(user["_id"])

    store.set_profile(uid, uid, {"income": 4200})

    assert session.profile["income"] == 4200


def test_identity_change_drops_previous_listeners(store, errors):
    first = make_user(store, "first@spendsense.io", income=100)
    second = make_user(store, "second@spendsense.io", income=200)
    first_uid = str(first["_id"])
    session = AuthSession(store, errors)

    session.observe(first)
    session.observe(second)
    store.set_profile(first_uid, first_uid, {"income": 999})

    assert session.profile["income"] == 200
    assert store.feed.listener_count(user_path(first_uid)) == 0


def test_stale_notification_is_ignored(store, errors):
    first = make_user(store, "first@spendsense.io", income=100)
    second = make_user(store, "second@spendsense.io", income=200)
    session = AuthSession(store, errors)
    session.observe(first)
    stale_generation = session._generation

    session.observe(second)
    session._on_profile(stale_generation, {"income": 1})

    assert session.profile["income"] == 200


def test_denied_profile_read_emits_error_and_settles(mongo, errors):
    store = DocumentStore(mongo, rules=lambda actor, path, op: op != "get" and owner_only(actor, path, op))
    user = make_user(store, "ana@spendsense.io")
    uid = str(user["_id"])
    emitted = []
    errors.on(PERMISSION_ERROR, emitted.append)
    session = AuthSession(store, errors)

    session.observe(user)

    assert session.profile is None
    assert session.state == SessionState.VERIFIED
    assert len(emitted) == 1
    assert emitted[0].context.operation == "get"
    assert emitted[0].context.path == user_path(uid)


def test_logout_revokes_tokens_and_routes_to_login(store, errors):
    user = make_user(store, "ana@spendsense.io")
    session = AuthSession(store, errors)
    session.observe(user)

    session.logout()

    assert session.state == SessionState.UNAUTHENTICATED
    assert session.resolve("/dashboard") == "/login"
    assert store.find_user(str(user["_id"]))["token_version"] == 1
    assert store.feed.listener_count() == 0


def test_unverified_identity_is_sent_to_verification(store, errors):
    session = AuthSession(store, errors)
    session.observe(make_user(store, "new@spendsense.io", verified=False))

    assert session.resolve("/dashboard") == "/verify-email"
