from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileKey:
    """Identifies one unit of reconciliation work.

    ``namespace`` is ``None`` for the administrative domain, which is synced
    regardless of whether a namespace exists for it.
    """

    namespace: str | None
    domain: str

    @property
    def is_admin(self) -> bool:
        return self.namespace is None

    def __str__(self) -> str:
        if self.namespace is None:
            return self.domain
        return f"{self.namespace}/{self.domain}"


def namespace_to_domain(namespace: str) -> str:
    """Map a namespace name onto its Athenz domain.

    Single dashes are domain separators and a doubled dash escapes a literal
    dash: ``sports-search`` is ``sports.search`` and ``my--app`` is ``my-app``.
    """
    return namespace.replace("--", "\x00").replace("-", ".").replace("\x00", "-")


def domain_to_namespace(domain: str) -> str:
    """Inverse of :func:`namespace_to_domain`."""
    return domain.replace("-", "--").replace(".", "-")


class DomainMapper:
    """Derives reconcile keys from namespaces and domain names.

    System namespaces never produce keys. The admin domain, when configured,
    always maps to the namespace-less admin key.
    """

    def __init__(self, admin_domain: str = "", system_namespaces: Iterable[str] = ()) -> None:
        self.admin_domain = admin_domain
        self.system_namespaces = frozenset(system_namespaces)

    def is_system_namespace(self, namespace: str) -> bool:
        return namespace in self.system_namespaces

    def admin_key(self) -> ReconcileKey | None:
        if not self.admin_domain:
            return None
        return ReconcileKey(namespace=None, domain=self.admin_domain)

    def key_for_namespace(self, namespace: str) -> ReconcileKey | None:
        if not namespace or self.is_system_namespace(namespace):
            return None
        return ReconcileKey(namespace=namespace, domain=namespace_to_domain(namespace))

    def key_for_domain(self, domain: str) -> ReconcileKey | None:
        if not domain:
            return None
        if self.admin_domain and domain == self.admin_domain:
            return self.admin_key()
        return self.key_for_namespace(domain_to_namespace(domain))
