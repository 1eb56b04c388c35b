"""Tests for certificate fingerprinting and the certificate watcher."""

import asyncio
from pathlib import Path

import pytest

from siteagent.certs import (
    CertificateFingerprints,
    CertificateReadError,
    CertificateWatcher,
    compute_fingerprints,
    fingerprint_files,
)


def write_certs(directory: Path, suffix: str = "") -> tuple[Path, Path, Path]:
    cert = directory / "tls.crt"
    key = directory / "tls.key"
    ca = directory / "ca.crt"
    cert.write_text(f"CERT{suffix}")
    key.write_text(f"KEY{suffix}")
    ca.write_text(f"CA{suffix}")
    return cert, key, ca


class TestFingerprints:
    """Tests for fingerprint computation."""

    def test_fingerprints_change_with_content(self, tmp_path: Path) -> None:
        """Test that rewriting a file changes only its fingerprint."""
        cert, key, ca = write_certs(tmp_path)
        before = compute_fingerprints(cert, key, ca)

        cert.write_text("ROTATED")
        after = compute_fingerprints(cert, key, ca)

        assert after.client != before.client
        assert after.server == before.server

    def test_unset_paths_are_skipped(self) -> None:
        """Test that None paths contribute nothing."""
        assert fingerprint_files([None, None]) == fingerprint_files([])

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        """Test that an unreadable file raises CertificateReadError."""
        with pytest.raises(CertificateReadError):
            fingerprint_files([tmp_path / "missing.crt"])


class TestCertificateWatcher:
    """Tests for CertificateWatcher."""

    @pytest.mark.asyncio
    async def test_reload_only_on_change(self, tmp_path: Path) -> None:
        """Test that the callback fires once per content change."""
        cert, key, ca = write_certs(tmp_path)
        reloads: list[CertificateFingerprints] = []

        def read() -> CertificateFingerprints:
            return compute_fingerprints(cert, key, ca)

        async def on_change() -> None:
            reloads.append(read())

        watcher = CertificateWatcher("test", read, on_change, interval_seconds=0.01)
        task = asyncio.create_task(watcher.run(read()))

        await asyncio.sleep(0.05)
        assert reloads == []

        cert.write_text("ROTATED")
        for _ in range(100):
            if reloads:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        watcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert len(reloads) == 1
        assert watcher.reload_count == 1

    @pytest.mark.asyncio
    async def test_failed_reload_retried_next_tick(self, tmp_path: Path) -> None:
        """Test that a failed reload keeps the old fingerprints and retries."""
        cert, key, ca = write_certs(tmp_path)
        attempts = 0

        def read() -> CertificateFingerprints:
            return compute_fingerprints(cert, key, ca)

        async def on_change() -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("controller down")

        initial = read()
        cert.write_text("ROTATED")
        watcher = CertificateWatcher("test", read, on_change, interval_seconds=0.01)
        task = asyncio.create_task(watcher.run(initial))

        for _ in range(100):
            if watcher.reload_count:
                break
            await asyncio.sleep(0.01)
        watcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert attempts == 2
        assert watcher.reload_count == 1

    @pytest.mark.asyncio
    async def test_read_error_is_not_fatal(self, tmp_path: Path) -> None:
        """Test that unreadable certificates do not stop the watcher."""
        calls = 0

        def read() -> CertificateFingerprints:
            nonlocal calls
            calls += 1
            raise CertificateReadError("gone")

        async def on_change() -> None:
            raise AssertionError("must not reload")

        watcher = CertificateWatcher("test", read, on_change, interval_seconds=0.01)
        task = asyncio.create_task(watcher.run(CertificateFingerprints("a", "b")))
        await asyncio.sleep(0.05)
        watcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert calls >= 2
        assert watcher.stopped is True
