"""Shared fixtures: stores, a controllable clock, a mocked provider API and an app client."""

from collections.abc import Iterator

import pytest
import respx
from fastapi.testclient import TestClient
from httpx import Response

from guest_house.audit import AuditLog
from guest_house.config import Settings
from guest_house.lifecycle import SessionLifecycle
from guest_house.main import create_app
from guest_house.storage import AuthSessionStore
from guest_house.truid import TruIdClient
from guest_house.users import User, UserStore

PROVIDER_BASE_URL = "https://eu.api.tru.id"
APP_BASE_URL = "http://guest.example.com"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def users() -> UserStore:
    return UserStore()


@pytest.fixture
def auth_sessions(clock: FakeClock) -> AuthSessionStore:
    return AuthSessionStore(clock=clock)


@pytest.fixture
def provider() -> Iterator[respx.MockRouter]:
    """Mocked provider API with a working token endpoint."""
    with respx.mock(base_url=PROVIDER_BASE_URL, assert_all_called=False) as router:
        router.post("/oauth2/v1/token", name="token").mock(
            return_value=Response(200, json={"access_token": "tok_1", "expires_in": 3600}),
        )
        yield router


@pytest.fixture
def truid(clock: FakeClock, provider: respx.MockRouter) -> Iterator[TruIdClient]:
    client = TruIdClient("client-id", "client-secret", base_url=PROVIDER_BASE_URL, clock=clock)
    yield client
    client.close()


@pytest.fixture
def audit(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "audit")


@pytest.fixture
def lifecycle(
    users: UserStore,
    auth_sessions: AuthSessionStore,
    truid: TruIdClient,
    audit: AuditLog,
    clock: FakeClock,
) -> SessionLifecycle:
    return SessionLifecycle(
        users,
        auth_sessions,
        truid,
        base_url=APP_BASE_URL,
        session_ttl_seconds=300,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        APP_BASE_URL=APP_BASE_URL,
        TRU_CLIENT_ID="client-id",
        TRU_CLIENT_SECRET="client-secret",
        TRU_API_BASE_URL=PROVIDER_BASE_URL,
        SESSION_SECRET="test-secret",
        TRUST_PROXY=True,
    )


@pytest.fixture
def client(
    settings: Settings,
    users: UserStore,
    auth_sessions: AuthSessionStore,
    truid: TruIdClient,
    audit: AuditLog,
    clock: FakeClock,
) -> Iterator[TestClient]:
    app = create_app(settings, truid=truid, users=users, auth_sessions=auth_sessions, audit=audit, clock=clock)
    with TestClient(app, base_url="http://testserver", follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture
def known_user(users: UserStore) -> User:
    user = User(user_id="user-1", phone_number="+15551230010", email="guest@example.com")
    users.save(user)
    return user


def mock_coverage(
    router: respx.MockRouter,
    status: int,
    products: list | None = None,
    ip: str = "10.0.0.1",
) -> respx.Route:
    body = {"products": products or []} if status == 200 else {"status": status}
    return router.get(f"/coverage/v0.1/device_ips/{ip}", name="coverage").mock(
        return_value=Response(status, json=body),
    )


def mock_create_check(router: respx.MockRouter, check_id: str) -> respx.Route:
    return router.post("/subscriber_check/v0.2/checks", name="create_check").mock(
        return_value=Response(201, json={"check_id": check_id, "status": "ACCEPTED"}),
    )


def mock_complete_check(
    router: respx.MockRouter,
    check_id: str,
    *,
    match: bool,
    no_sim_change: bool = True,
) -> respx.Route:
    return router.patch(f"/subscriber_check/v0.2/checks/{check_id}", name="complete_check").mock(
        return_value=Response(
            200,
            json={
                "check_id": check_id,
                "status": "COMPLETED",
                "match": match,
                "no_sim_change": no_sim_change,
                "sim_change_withing": 7,
            },
        ),
    )
