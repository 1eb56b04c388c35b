"""Certificate change detection.

Fingerprints are MD5 digests of the on-disk TLS material. They are only a
change signal and never feed a trust decision.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class CertificateReadError(Exception):
    """Raised when certificate material cannot be read."""

    pass


@dataclass(frozen=True)
class CertificateFingerprints:
    """Digests of the client key pair and the server CA bundle."""

    client: str
    server: str


def fingerprint_files(paths: Iterable[Path | None]) -> str:
    """MD5 over the concatenated contents of ``paths``, skipping unset ones.

    Raises:
        CertificateReadError: If any configured file cannot be read.
    """
    digest = hashlib.md5(usedforsecurity=False)
    for path in paths:
        if path is None:
            continue
        try:
            digest.update(path.read_bytes())
        except OSError as e:
            raise CertificateReadError(f"Unable to read certificate file {path}: {e}") from e
    return digest.hexdigest()


def compute_fingerprints(
    client_cert_path: Path | None,
    client_key_path: Path | None,
    server_ca_path: Path | None,
) -> CertificateFingerprints:
    return CertificateFingerprints(
        client=fingerprint_files((client_cert_path, client_key_path)),
        server=fingerprint_files((server_ca_path,)),
    )


class CertificateWatcher:
    """Polls certificate fingerprints and fires a callback when they change.

    The callback is awaited inline; the fingerprints are only advanced after
    it succeeds, so a failed reload is retried on the next tick. The loop
    runs until ``stop()`` is called.
    """

    def __init__(
        self,
        name: str,
        read_fingerprints: Callable[[], CertificateFingerprints],
        on_change: Callable[[], Awaitable[None]],
        interval_seconds: float,
    ) -> None:
        self._name = name
        self._read_fingerprints = read_fingerprints
        self._on_change = on_change
        self._interval = interval_seconds
        self._stop_event = asyncio.Event()
        self.reload_count = 0

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self, initial: CertificateFingerprints) -> None:
        """Watch until stopped, starting from the fingerprints of the live connection."""
        current = initial
        logger.info(
            "Watching certificates",
            extra={"watcher": self._name, "interval_seconds": self._interval},
        )

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

            try:
                latest = self._read_fingerprints()
            except CertificateReadError as e:
                logger.warning(
                    "Certificate check failed, keeping current connection",
                    extra={"watcher": self._name, "error": str(e)},
                )
                continue

            if latest == current:
                continue

            logger.info(
                "Certificate change detected",
                extra={
                    "watcher": self._name,
                    "client_changed": latest.client != current.client,
                    "server_changed": latest.server != current.server,
                },
            )
            try:
                await self._on_change()
            except Exception as e:
                logger.error(
                    "Certificate reload failed, will retry on next check",
                    extra={"watcher": self._name, "error": str(e)},
                )
                continue

            current = latest
            self.reload_count += 1
            logger.info("Certificate reload complete", extra={"watcher": self._name})

        logger.info("Certificate watcher stopped", extra={"watcher": self._name})
