"""End-to-end tests through the FastAPI app: cookies, redirects, status codes, templates."""

import respx
from fastapi.testclient import TestClient

from conftest import PROVIDER_BASE_URL, mock_complete_check, mock_coverage, mock_create_check
from guest_house.main import create_app
from guest_house.storage import AuthSessionStore, Channel
from guest_house.users import User, UserStore

DEVICE = {"X-Forwarded-For": "10.0.0.1"}


def _sign_in(client: TestClient, phone: str):
    return client.post("/guest-house/auth/sign-in", data={"phone_number": phone}, headers=DEVICE)


def test__sign_in__not_mobile_ip_new_number_goes_to_onboarding(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
    users: UserStore,
) -> None:
    mock_coverage(provider, 412)

    res = _sign_in(client, "+15551230001")

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house/onboarding"
    assert len(auth_sessions) == 1
    assert len(users) == 0

    page = client.get("/guest-house/onboarding")
    assert page.status_code == 200
    assert "Add an email to finish signing up" in page.text


def test__sign_in__reachable_redirects_to_provider(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")

    res = _sign_in(client, "+15551230002")

    assert res.status_code == 303
    assert res.headers["location"] == f"{PROVIDER_BASE_URL}/subscriber_check/v0.2/checks/chk_abc/redirect"
    sess = auth_sessions.find_by_check_id("chk_abc")
    assert sess.channel == Channel.PHONE_CHECK


def test__sign_in__uses_forwarded_ip(client: TestClient, provider: respx.MockRouter) -> None:
    route = mock_coverage(provider, 412, ip="203.0.113.9")

    client.post(
        "/guest-house/auth/sign-in",
        data={"phone_number": "+15551230001"},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    assert route.call_count == 1


def test__sign_in__missing_phone_rerenders_form(client: TestClient) -> None:
    res = client.post("/guest-house/auth/sign-in", data={}, headers=DEVICE)

    assert res.status_code == 200
    assert "You need to input a phone number" in res.text


def test__check_callback__new_number_continues_to_onboarding(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")
    mock_complete_check(provider, "chk_abc", match=True, no_sim_change=True)
    _sign_in(client, "+15551230002")

    res = client.get("/guest-house/verification/handle-check", params={"check_id": "chk_abc", "code": "000000"})

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house/onboarding"
    sess = auth_sessions.find_by_check_id("chk_abc")
    assert sess is not None
    assert sess.phone_number_verified is True

    page = client.get("/guest-house/onboarding")
    assert "Your phone number is verified" in page.text


def test__check_callback__known_user_goes_home(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
    known_user: User,
) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")
    mock_complete_check(provider, "chk_abc", match=True, no_sim_change=False)
    _sign_in(client, known_user.phone_number)

    res = client.get("/guest-house/verification/handle-check", params={"check_id": "chk_abc", "code": "000000"})

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house"
    assert len(auth_sessions) == 0
    home = client.get("/guest-house")
    assert f"Signed in as {known_user.phone_number}" in home.text


def test__check_callback__unknown_check_is_gone(client: TestClient) -> None:
    res = client.get("/guest-house/verification/handle-check", params={"check_id": "chk_nope", "code": "000000"})

    assert res.status_code == 410


def test__check_callback__missing_query_is_bad_request(client: TestClient) -> None:
    assert client.get("/guest-house/verification/handle-check").status_code == 400


def test__check_callback__other_browser_is_forbidden(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")
    _sign_in(client, "+15551230002")

    other = TestClient(client.app, follow_redirects=False)
    res = other.get("/guest-house/verification/handle-check", params={"check_id": "chk_abc", "code": "000000"})

    assert res.status_code == 403
    assert auth_sessions.find_by_check_id("chk_abc") is None


def test__check_callback__provider_failure_is_generic_500(
    client: TestClient,
    provider: respx.MockRouter,
) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")
    provider.patch("/subscriber_check/v0.2/checks/chk_abc").respond(500)
    _sign_in(client, "+15551230002")

    # a client outside the lifespan context so shutdown does not close the shared provider client
    tolerant = TestClient(client.app, follow_redirects=False, raise_server_exceptions=False)
    tolerant.cookies = client.cookies
    res = tolerant.get("/guest-house/verification/handle-check", params={"check_id": "chk_abc", "code": "000000"})

    assert res.status_code == 500
    assert res.text == "Something went wrong"


def test__magic_link__mismatched_code_renders_expired(
    client: TestClient,
    provider: respx.MockRouter,
    auth_sessions: AuthSessionStore,
    known_user: User,
) -> None:
    mock_coverage(provider, 400)
    res = _sign_in(client, known_user.phone_number)
    assert res.headers["location"] == "/guest-house/magic-link"
    assert len(auth_sessions) == 1

    res = client.get("/guest-house/verification/handle-link", params={"code": "wrong"})

    assert res.status_code == 200
    assert "Your authentication session has expired" in res.text
    assert len(auth_sessions) == 0
    home = client.get("/guest-house")
    assert "Signed in as" not in home.text


def test__magic_link__missing_code_is_bad_request(client: TestClient) -> None:
    assert client.get("/guest-house/verification/handle-link").status_code == 400


def test__onboarding__full_unverified_flow(
    client: TestClient,
    provider: respx.MockRouter,
    users: UserStore,
) -> None:
    mock_coverage(provider, 412)
    _sign_in(client, "+15551230001")

    missing = client.post("/guest-house/onboarding", data={})
    assert "You need to provide an email to sign-in" in missing.text

    res = client.post("/guest-house/onboarding", data={"email": "new@example.com"})

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house"
    user = users.find_by_phone_number("+15551230001")
    assert user.email == "new@example.com"
    assert "Signed in as +15551230001 (new@example.com)" in client.get("/guest-house").text


def test__onboarding__without_session_redirects_to_sign_in(client: TestClient) -> None:
    res = client.get("/guest-house/onboarding")

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house/auth/sign-in"


def test__sign_out__clears_identity(client: TestClient, provider: respx.MockRouter, users: UserStore) -> None:
    mock_coverage(provider, 412)
    _sign_in(client, "+15551230001")
    client.post("/guest-house/onboarding", data={"email": "new@example.com"})

    res = client.post("/guest-house/auth/sign-out")

    assert res.status_code == 303
    assert "Signed in as" not in client.get("/guest-house").text
    assert client.get("/guest-house/auth/sign-in").status_code == 200


def test__sign_in_page__signed_in_browser_goes_home(client: TestClient, provider: respx.MockRouter) -> None:
    mock_coverage(provider, 412)
    _sign_in(client, "+15551230001")
    client.post("/guest-house/onboarding", data={"email": "new@example.com"})

    res = client.get("/guest-house/auth/sign-in")

    assert res.status_code == 303
    assert res.headers["location"] == "/guest-house"


def test__home__stale_identity_is_cleared(
    client: TestClient,
    provider: respx.MockRouter,
    users: UserStore,
) -> None:
    mock_coverage(provider, 412)
    _sign_in(client, "+15551230001")
    client.post("/guest-house/onboarding", data={"email": "new@example.com"})
    users.remove(users.find_by_phone_number("+15551230001"))

    home = client.get("/guest-house")

    assert "Sign in with your phone number" in home.text
    # the cookie no longer carries the stale user id
    assert client.get("/guest-house/auth/sign-in").status_code == 200


def test__magic_link_page_renders(client: TestClient) -> None:
    res = client.get("/guest-house/magic-link")

    assert res.status_code == 200
    assert "Check your email" in res.text


def test__create_app__keeps_injected_empty_stores(
    settings,
    truid,
    audit,
    users: UserStore,
    auth_sessions: AuthSessionStore,
) -> None:
    assert len(users) == 0
    assert len(auth_sessions) == 0

    app = create_app(settings, truid=truid, users=users, auth_sessions=auth_sessions, audit=audit)

    assert app.state.lifecycle.users is users
    assert app.state.lifecycle.auth_sessions is auth_sessions
    assert app.state.lifecycle.truid is truid
    assert app.state.lifecycle.audit is audit
    assert app.state.settings is settings


def test__onboarding_page__pending_check_says_in_progress(client: TestClient, provider: respx.MockRouter) -> None:
    mock_coverage(provider, 200)
    mock_create_check(provider, "chk_abc")
    _sign_in(client, "+15551230002")

    page = client.get("/guest-house/onboarding")

    assert "We are still checking your phone number" in page.text
    assert "could not verify" not in page.text
