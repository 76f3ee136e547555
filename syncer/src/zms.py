from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime
from types import MappingProxyType
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from syncer.src.credentials import CredentialBundle
from syncer.src.metrics import METRICS


class ZMSError(Exception):
    """Base exception for ZMS API failures.

    ``retryable`` tells the reconciler whether re-queuing the key can help.
    """

    retryable = False
    kind = "error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def body_preview(self, limit: int = 512) -> str | None:
        """Return a truncated preview of the response body for logging."""
        if self.response_body is None:
            return None
        if len(self.response_body) <= limit:
            return self.response_body
        return f"{self.response_body[:limit]}...<truncated>"


class ZMSTransportError(ZMSError):
    retryable = True
    kind = "transport"


class ZMSAuthError(ZMSError):
    retryable = True
    kind = "auth"


class ZMSServerError(ZMSError):
    retryable = True
    kind = "server"


class DomainNotFoundError(ZMSError):
    kind = "not_found"


class MalformedResponseError(ZMSError):
    kind = "malformed"


@dataclass(frozen=True)
class DomainSnapshot:
    """Point-in-time copy of one domain's roles and their members.

    ``roles`` maps the short role name (``admin`` rather than
    ``sports:role.admin``) to the member identities. Two snapshots with the
    same roles and members are equivalent regardless of ``fetched_at``.
    """

    domain: str
    roles: Mapping[str, frozenset[str]]
    fetched_at: datetime

    @classmethod
    def build(
        cls,
        domain: str,
        roles: Mapping[str, Iterable[str]],
        fetched_at: datetime | None = None,
    ) -> DomainSnapshot:
        frozen = {name: frozenset(members) for name, members in roles.items()}
        return cls(
            domain=domain,
            roles=MappingProxyType(frozen),
            fetched_at=fetched_at or datetime.now(UTC),
        )

    @property
    def is_empty(self) -> bool:
        return not self.roles

    def as_spec(self) -> dict[str, Any]:
        """Render the snapshot as a deterministic ``AthenzDomain`` spec."""
        return {
            "domain": self.domain,
            "roles": {name: sorted(self.roles[name]) for name in sorted(self.roles)},
        }


class CredentialSource(Protocol):
    def get_latest_certificate(self) -> CredentialBundle: ...


def short_role_name(domain: str, full_name: str) -> str:
    """Strip the ``<domain>:role.`` prefix ZMS puts on role names."""
    prefix = f"{domain}:role."
    if full_name.startswith(prefix):
        return full_name[len(prefix):]
    _, separator, tail = full_name.partition(":role.")
    return tail if separator else full_name


def parse_role_list(domain: str, payload: Any, fetched_at: datetime | None = None) -> DomainSnapshot:
    """Convert a ``GET /domain/{domain}/role?members=true`` body into a snapshot.

    Raises :class:`MalformedResponseError` when the body does not have the
    expected shape.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("list", []), list):
        raise MalformedResponseError(f"role list for {domain} is not an object with a 'list' array")

    roles: dict[str, set[str]] = {}
    for entry in payload.get("list", []):
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise MalformedResponseError(f"role entry without a name in domain {domain}")
        name = short_role_name(domain, entry["name"])
        if not name:
            raise MalformedResponseError(f"empty role name {entry['name']!r} in domain {domain}")

        members: set[str] = set()
        role_members = entry.get("roleMembers")
        if role_members is not None:
            if not isinstance(role_members, list):
                raise MalformedResponseError(f"roleMembers of {entry['name']} is not a list")
            for member in role_members:
                if not isinstance(member, dict) or not isinstance(member.get("memberName"), str):
                    raise MalformedResponseError(f"member without memberName in {entry['name']}")
                members.add(member["memberName"])
        else:
            plain_members = entry.get("members") or []
            if not isinstance(plain_members, list) or not all(
                isinstance(member, str) for member in plain_members
            ):
                raise MalformedResponseError(f"members of {entry['name']} is not a list of strings")
            members.update(plain_members)

        roles.setdefault(name, set()).update(members)

    return DomainSnapshot.build(domain=domain, roles=roles, fetched_at=fetched_at)


class _LeasedClient:
    """An ``httpx.Client`` bound to one credential bundle, closed once retired and idle."""

    def __init__(self, http: httpx.Client, bundle: CredentialBundle) -> None:
        self.http = http
        self.bundle = bundle
        self.users = 0
        self.retired = False


class ZMSClient:
    """Client for the ZMS endpoints the syncer reads.

    Every request is sent over an ``httpx.Client`` whose TLS context comes
    from the credential source's current bundle. When the bundle is swapped
    a new client is built for later requests; the retired one is closed only
    after the last request still using it has finished.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialSource,
        timeout: float = 10.0,
        disable_keep_alives: bool = True,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.disable_keep_alives = disable_keep_alives
        self.logger = logger or logging.getLogger(__name__)
        self._transport = transport
        self._lock = threading.Lock()
        self._active: _LeasedClient | None = None

    def _build_http_client(self, bundle: CredentialBundle) -> httpx.Client:
        keepalive = 0 if self.disable_keep_alives else 20
        return httpx.Client(
            base_url=self.base_url,
            verify=bundle.ssl_context,
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=keepalive),
            headers={"Accept": "application/json"},
            transport=self._transport,
            follow_redirects=False,
        )

    @staticmethod
    def _close_if_idle_locked(leased: _LeasedClient) -> None:
        if leased.retired and leased.users == 0 and not leased.http.is_closed:
            leased.http.close()

    @contextmanager
    def _lease(self) -> Iterator[httpx.Client]:
        """Yield the client for the current bundle, keeping it open until released."""
        bundle = self.credentials.get_latest_certificate()
        with self._lock:
            if self._active is None or self._active.bundle is not bundle:
                retired = self._active
                self._active = _LeasedClient(self._build_http_client(bundle), bundle)
                if retired is not None:
                    self.logger.debug("Client certificate changed; rebuilt ZMS HTTP client")
                    retired.retired = True
                    self._close_if_idle_locked(retired)
            leased = self._active
            leased.users += 1
        try:
            yield leased.http
        finally:
            with self._lock:
                leased.users -= 1
                self._close_if_idle_locked(leased)

    def close(self) -> None:
        with self._lock:
            if self._active is not None:
                self._active.retired = True
                self._close_if_idle_locked(self._active)
            self._active = None

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        status = response.status_code
        if status < 400:
            return
        body = response.text
        if status in {401, 403}:
            raise ZMSAuthError(f"{what}: access denied (status={status})", status, body)
        if status == 404:
            raise DomainNotFoundError(f"{what}: not found", status, body)
        if status == 429 or status >= 500:
            raise ZMSServerError(f"{what}: server error (status={status})", status, body)
        raise MalformedResponseError(f"{what}: rejected request (status={status})", status, body)

    def _request(self, what: str, path: str, headers: dict[str, str] | None = None) -> httpx.Response:
        try:
            try:
                with self._lease() as http:
                    response = http.get(path, headers=headers)
            except httpx.TimeoutException as exc:
                raise ZMSTransportError(f"{what}: timed out after {self.timeout}s") from exc
            except httpx.TransportError as exc:
                raise ZMSTransportError(f"{what}: {exc}") from exc
            except RuntimeError as exc:
                # httpx refuses to send on a closed client.
                raise ZMSTransportError(f"{what}: {exc}") from exc
            self._raise_for_status(response, what)
            return response
        except ZMSError as exc:
            METRICS.zms_errors_total.labels(kind=exc.kind).inc()
            raise

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            METRICS.zms_errors_total.labels(kind=MalformedResponseError.kind).inc()
            raise MalformedResponseError(
                f"{what}: response is not JSON", response.status_code, response.text
            ) from exc

    def get_domain_snapshot(self, domain: str) -> DomainSnapshot:
        """Fetch all roles of ``domain`` with their members."""
        what = f"fetch roles of domain {domain}"
        response = self._request(what, f"/domain/{quote(domain, safe='')}/role?members=true")
        fetched_at = datetime.now(UTC)
        payload = self._json(response, what)
        try:
            return parse_role_list(domain, payload, fetched_at=fetched_at)
        except MalformedResponseError as exc:
            METRICS.zms_errors_total.labels(kind=exc.kind).inc()
            exc.response_body = response.text
            raise

    def list_modified_domains(self, since: datetime) -> list[str]:
        """Return the names of domains modified after ``since``."""
        what = "list modified domains"
        response = self._request(
            what,
            "/domain",
            headers={"If-Modified-Since": format_datetime(since.astimezone(UTC), usegmt=True)},
        )
        if response.status_code == 304:
            return []
        payload = self._json(response, what)
        names = payload.get("names") if isinstance(payload, dict) else None
        if names is None:
            return []
        if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
            METRICS.zms_errors_total.labels(kind=MalformedResponseError.kind).inc()
            raise MalformedResponseError(f"{what}: 'names' is not a list of strings")
        return names
