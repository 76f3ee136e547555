from __future__ import annotations

import logging
import os
import ssl
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from syncer.src.metrics import METRICS


class CredentialError(RuntimeError):
    """Raised when the client key/certificate pair cannot be loaded."""


@dataclass(frozen=True)
class CredentialBundle:
    """One loaded mutual-TLS client identity.

    Bundles are never mutated; a reload builds a new one and swaps the
    reference held by :class:`CertReloader`.
    """

    ssl_context: ssl.SSLContext
    certificate: x509.Certificate
    loaded_at: datetime
    cert_mtime_ns: int
    key_mtime_ns: int

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


def _public_key_der(public_key: object) -> bytes:
    return public_key.public_bytes(  # type: ignore[attr-defined]
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_credential_bundle(
    key_file: str,
    cert_file: str,
    ca_file: str | None = None,
    now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> CredentialBundle:
    """Parse the PEM key and certificate and build a client TLS context.

    The private key must belong to the certificate. Any read or parse
    failure is raised as :class:`CredentialError`.
    """
    try:
        cert_mtime_ns = os.stat(cert_file).st_mtime_ns
        key_mtime_ns = os.stat(key_file).st_mtime_ns
        with open(cert_file, "rb") as handle:
            cert_pem = handle.read()
        with open(key_file, "rb") as handle:
            key_pem = handle.read()
    except OSError as exc:
        raise CredentialError(f"cannot read credential files: {exc}") from exc

    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CredentialError(f"cannot parse credential files: {exc}") from exc

    if _public_key_der(private_key.public_key()) != _public_key_der(certificate.public_key()):
        raise CredentialError("private key does not match certificate")

    # ssl only loads identities from files, so hand it the bytes checked above
    # rather than re-reading paths a rotation may have replaced meanwhile.
    try:
        context = ssl.create_default_context(cafile=ca_file)
        with tempfile.TemporaryDirectory(prefix="athenz-syncer-") as scratch:
            identity = os.path.join(scratch, "identity.pem")
            with open(identity, "wb") as handle:
                handle.write(cert_pem.rstrip(b"\n") + b"\n" + key_pem)
            context.load_cert_chain(certfile=identity)
    except (OSError, ssl.SSLError) as exc:
        raise CredentialError(f"cannot build TLS context: {exc}") from exc

    return CredentialBundle(
        ssl_context=context,
        certificate=certificate,
        loaded_at=now_fn(),
        cert_mtime_ns=cert_mtime_ns,
        key_mtime_ns=key_mtime_ns,
    )


class CertReloader:
    """Keeps the client identity used for ZMS calls fresh without a restart.

    The initial load happens in the constructor and failure there is fatal.
    Afterwards a background thread polls the files every ``poll_interval``
    seconds and swaps in a new bundle when either file changed and the new
    pair parses. A failed reload is logged and the previous bundle stays
    active, so a half-written file on disk never interrupts traffic.

    :meth:`get_latest_certificate` takes no lock. The bundle reference is
    replaced in a single assignment, so readers see either the old or the
    new pair and never a mix.
    """

    def __init__(
        self,
        key_file: str,
        cert_file: str,
        ca_file: str | None = None,
        poll_interval: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.key_file = key_file
        self.cert_file = cert_file
        self.ca_file = ca_file
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self._reload_lock = threading.Lock()
        self._thread: threading.Thread | None = None

        self._bundle = load_credential_bundle(key_file, cert_file, ca_file)
        self._record(self._bundle)
        self.logger.info(
            "Loaded client certificate %s (expires %s)",
            self._bundle.subject,
            self._bundle.not_valid_after.isoformat(),
        )

    @staticmethod
    def _record(bundle: CredentialBundle) -> None:
        METRICS.cert_expiry_timestamp_seconds.set(bundle.not_valid_after.timestamp())

    def get_latest_certificate(self) -> CredentialBundle:
        return self._bundle

    def _files_changed(self, bundle: CredentialBundle) -> bool:
        try:
            cert_mtime_ns = os.stat(self.cert_file).st_mtime_ns
            key_mtime_ns = os.stat(self.key_file).st_mtime_ns
        except OSError:
            # Let the load attempt report the missing file.
            return True
        return cert_mtime_ns != bundle.cert_mtime_ns or key_mtime_ns != bundle.key_mtime_ns

    def reload(self, force: bool = False) -> bool:
        """Try one reload. Returns True when a new bundle was swapped in."""
        with self._reload_lock:
            current = self._bundle
            if not force and not self._files_changed(current):
                METRICS.cert_reloads_total.labels(result="unchanged").inc()
                return False
            try:
                bundle = load_credential_bundle(self.key_file, self.cert_file, self.ca_file)
            except CredentialError as exc:
                METRICS.cert_reloads_total.labels(result="failed").inc()
                self.logger.warning(
                    "Credential reload failed; keeping certificate %s: %s",
                    current.subject,
                    exc,
                )
                return False

            self._bundle = bundle
            self._record(bundle)
            METRICS.cert_reloads_total.labels(result="reloaded").inc()
            self.logger.info(
                "Reloaded client certificate %s (expires %s)",
                bundle.subject,
                bundle.not_valid_after.isoformat(),
            )
            return True

    def run(self, stop_event: threading.Event) -> None:
        """Poll for credential changes until ``stop_event`` is set."""
        while not stop_event.wait(timeout=self.poll_interval):
            try:
                self.reload()
            except Exception:
                self.logger.exception("Unexpected error during credential reload")

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run,
            args=(stop_event,),
            name="cert-reloader",
            daemon=True,
        )
        self._thread.start()
        return self._thread
