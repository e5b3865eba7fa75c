# guest_house/truid.py
#
# -----------------------------------------------------------------------------
# Verification provider client (tru.ID)
# -----------------------------------------------------------------------------
# Responsibilities:
#   - OAuth2 client-credentials token acquisition + caching
#   - Coverage lookup (is this device IP on a supported mobile network?)
#   - SubscriberCheck create / complete
#
# Failure model:
#   - Nothing is retried.
#   - Coverage 400 / 412 are business outcomes (Reachability with a reason).
#   - Every other failure (non-2xx, transport error, malformed body) becomes a
#     ProviderError with the original exception chained as __cause__.
#
# Token handling is an explicit step: request() asks the TokenManager for a
# valid access token before each outbound call, unless the caller already
# supplied an Authorization header.
# -----------------------------------------------------------------------------

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from .errors import ProviderError
from .models import CheckCompleted, CheckCreated, CoverageResponse, TokenResponse

DEFAULT_SCOPES = ("phone_check", "subscriber_check", "sim_check", "coverage")


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
class ReachabilityFailure(str, Enum):
    UNSUPPORTED_NETWORK = "Unsupported Network"
    NOT_MOBILE_IP = "Not a mobile IP"


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str


@dataclass(frozen=True)
class Reachability:
    reachable: bool
    reason: Optional[ReachabilityFailure] = None
    products: Tuple[Product, ...] = ()


@dataclass(frozen=True)
class CheckResult:
    status: str
    match: bool
    no_sim_change: bool
    sim_change_within: Optional[int] = None


# -----------------------------------------------------------------------------
# Tokens
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires


class ClientCredentials:
    """Fetches tokens with the client-credentials grant (HTTP Basic auth)."""

    def __init__(
        self,
        http: httpx.Client,
        client_id: str,
        client_secret: str,
        scope: Iterable[str],
        clock: Callable[[], float] = time.time,
    ):
        self._http = http
        self._client_id = client_id
        self._auth = httpx.BasicAuth(client_id, client_secret)
        self._scope = " ".join(scope)
        self._clock = clock

    def fetch(self) -> CachedToken:
        try:
            res = self._http.post(
                "/oauth2/v1/token",
                data={"grant_type": "client_credentials", "scope": self._scope},
                auth=self._auth,
            )
            res.raise_for_status()
            body = TokenResponse.model_validate(res.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ProviderError(
                f"failed to get client credentials token for client_id={self._client_id}"
            ) from e

        return CachedToken(
            access_token=body.access_token,
            expires=self._clock() + body.expires_in,
        )


class TokenManager:
    """Single-slot token cache. Refreshes only when empty or expired."""

    def __init__(self, fetcher: ClientCredentials, clock: Callable[[], float] = time.time):
        self._fetcher = fetcher
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._lock = threading.Lock()

    def get_access_token(self) -> str:
        with self._lock:
            if self._token is None or not self._token.is_valid(self._clock()):
                self._token = self._fetcher.fetch()
            return self._token.access_token


# -----------------------------------------------------------------------------
# API groups
# -----------------------------------------------------------------------------
class Coverage:
    def __init__(self, client: "TruIdClient"):
        self._client = client

    def reachability_check(self, device_ip: str) -> Reachability:
        try:
            res = self._client.request("GET", f"/coverage/v0.1/device_ips/{device_ip}")
            body = CoverageResponse.model_validate(res.json())
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 400:
                return Reachability(reachable=False, reason=ReachabilityFailure.UNSUPPORTED_NETWORK)
            if status == 412:
                return Reachability(reachable=False, reason=ReachabilityFailure.NOT_MOBILE_IP)
            raise ProviderError(f"failed to check device reachability for device_ip={device_ip}") from e
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ProviderError(f"failed to check device reachability for device_ip={device_ip}") from e

        products = tuple(Product(product_id=p.product_id, name=p.product_name) for p in body.products)
        return Reachability(reachable=True, products=products)


class SubscriberCheck:
    def __init__(self, client: "TruIdClient"):
        self._client = client

    def create(self, phone_number: str, redirect_url: str) -> str:
        """Create a provider-side check and return its check_id."""
        try:
            res = self._client.request(
                "POST",
                "/subscriber_check/v0.2/checks",
                json={"phone_number": phone_number, "redirect_url": redirect_url},
            )
            body = CheckCreated.model_validate(res.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ProviderError(f"failed to create check for phone_number={phone_number}") from e

        return body.check_id

    def complete(self, check_id: str, code: str) -> CheckResult:
        """Submit the code from the redirect to finalize the check."""
        patch: List[dict] = [{"op": "add", "path": "/code", "value": code}]
        try:
            res = self._client.request(
                "PATCH",
                f"/subscriber_check/v0.2/checks/{check_id}",
                json=patch,
                headers={"Content-Type": "application/json-patch+json"},
            )
            body = CheckCompleted.model_validate(res.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ProviderError(f"failed to complete check for check_id={check_id}") from e

        return CheckResult(
            status=body.status,
            match=body.match,
            no_sim_change=body.no_sim_change,
            sim_change_within=body.sim_change_withing,
        )


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------
class TruIdClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        data_residency: str = "eu",
        scope: Iterable[str] = DEFAULT_SCOPES,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = (base_url or f"https://{data_residency}.api.tru.id").rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout)
        self.tokens = TokenManager(
            ClientCredentials(self._http, client_id, client_secret, scope, clock),
            clock,
        )
        self.coverage = Coverage(self)
        self.subscriber_check = SubscriberCheck(self)

    @classmethod
    def from_settings(cls, settings) -> "TruIdClient":
        return cls(
            settings.TRU_CLIENT_ID,
            settings.TRU_CLIENT_SECRET,
            data_residency=settings.TRU_DATA_RESIDENCY,
            scope=settings.TRU_SCOPES,
            base_url=settings.TRU_API_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def check_redirect_url(self, check_id: str) -> str:
        """Provider-hosted page the browser must visit (over mobile data) to run the check."""
        return f"{self.base_url}/subscriber_check/v0.2/checks/{check_id}/redirect"

    def request(self, method: str, path: str, *, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        """
        Authenticated request. Raises httpx.HTTPStatusError on non-2xx so the
        API groups can classify status codes themselves.
        """
        headers = dict(headers or {})
        if not any(k.lower() == "authorization" for k in headers):
            headers["Authorization"] = f"Bearer {self.tokens.get_access_token()}"

        res = self._http.request(method, path, headers=headers, **kwargs)
        res.raise_for_status()
        return res

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "TruIdClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
