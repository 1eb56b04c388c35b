"""Site Controller gRPC client with atomic replacement across certificate rotation.

One live client is held in an AtomicClient cell. Readers take the current
reference without locking; writers (initial creation and certificate
reloads) build a complete replacement first and then store it in a single
reference assignment, so readers only ever see a fully constructed client.
The replaced client is drained in the background so in-flight calls on it
finish rather than being cut off.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

import grpc
from pydantic import BaseModel

from .certs import CertificateFingerprints, CertificateReadError, CertificateWatcher, compute_fingerprints
from .codec import SITE_CONTROLLER_SERVICE, Codec, build_codec
from .config import SiteControllerConfig
from .errors import ClientNotReadyError, is_connectivity_error, status_code_of
from .health import ComponentState, HealthStatus
from .metrics import SiteAgentMetrics

logger = logging.getLogger(__name__)

# Seconds an old channel gets to finish in-flight calls after a swap
CLIENT_DRAIN_GRACE_SECONDS = 30.0


class ControllerClient(Protocol):
    """Call contract the orchestrator and inventory engine rely on."""

    version: int

    async def invoke(
        self,
        method: str,
        request: BaseModel | dict[str, Any] | None,
        *,
        timeout: float | None = None,
        metadata: Sequence[tuple[str, str]] | None = None,
    ) -> dict[str, Any]: ...

    async def close(self, grace: float | None = None) -> None: ...


class SiteControllerClient:
    """Thin wrapper over a grpc.aio channel to the Site Controller.

    Requests and responses are dictionaries; ``codec`` maps them to the
    wire format method by method. RPCs go to the codec's service.
    """

    def __init__(
        self,
        channel: grpc.aio.Channel,
        *,
        address: str,
        codec: Codec,
        service: str = SITE_CONTROLLER_SERVICE,
        version: int = 0,
        metrics: SiteAgentMetrics | None = None,
    ) -> None:
        self._channel = channel
        self.address = address
        self._codec = codec
        self._service = service
        self.version = version
        self._metrics = metrics

    async def wait_ready(self, timeout: float) -> None:
        """Block until the channel is connected or raise TimeoutError."""
        await asyncio.wait_for(self._channel.channel_ready(), timeout=timeout)

    async def invoke(
        self,
        method: str,
        request: BaseModel | dict[str, Any] | None,
        *,
        timeout: float | None = None,
        metadata: Sequence[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Call a unary Site Controller method and return the decoded response."""
        codec = self._codec.for_method(method)
        rpc = self._channel.unary_unary(
            f"/{self._service}/{method}",
            request_serializer=codec.request_serializer,
            response_deserializer=codec.response_deserializer,
        )
        start = time.monotonic()
        code = "OK"
        try:
            return await rpc(request, timeout=timeout, metadata=metadata)
        except grpc.RpcError as e:
            status = status_code_of(e)
            code = status.name if status is not None else "UNKNOWN"
            raise
        finally:
            if self._metrics is not None:
                self._metrics.observe_rpc(method, code, time.monotonic() - start)

    async def close(self, grace: float | None = None) -> None:
        await self._channel.close(grace)


def _read_optional(path: Any) -> bytes | None:
    return path.read_bytes() if path is not None else None


def build_channel_credentials(config: SiteControllerConfig) -> grpc.ChannelCredentials:
    """Load mutual TLS material from disk.

    Raises:
        CertificateReadError: If any configured file cannot be read.
    """
    try:
        root_certificates = None if config.skip_server_auth else _read_optional(config.server_ca_path)
        private_key = _read_optional(config.client_key_path)
        certificate_chain = _read_optional(config.client_cert_path)
    except OSError as e:
        raise CertificateReadError(f"Unable to read Site Controller TLS material: {e}") from e

    if config.skip_server_auth:
        logger.warning(
            "Server authentication disabled for Site Controller, using system trust store",
            extra={"address": config.address},
        )

    return grpc.ssl_channel_credentials(
        root_certificates=root_certificates,
        private_key=private_key,
        certificate_chain=certificate_chain,
    )


async def dial_site_controller(
    config: SiteControllerConfig,
    metrics: SiteAgentMetrics | None = None,
) -> SiteControllerClient:
    """Open a channel from current TLS material and wait until it is usable."""
    codec = build_codec(config.codec, config.descriptor_set_path)
    if config.secure:
        channel = grpc.aio.secure_channel(config.address, build_channel_credentials(config))
    else:
        channel = grpc.aio.insecure_channel(config.address)

    client = SiteControllerClient(channel, address=config.address, codec=codec, metrics=metrics)
    try:
        await client.wait_ready(config.connect_timeout_seconds)
    except BaseException:
        await client.close()
        raise
    return client


class AtomicClient:
    """Single mutable cell holding the current live client.

    ``get_client`` never blocks. ``swap_client`` serializes writers against
    each other only; the store itself is one reference assignment.
    """

    def __init__(self) -> None:
        self._client: ControllerClient | None = None
        self._version = 0
        self._write_lock = threading.Lock()

    @property
    def version(self) -> int:
        return self._version

    def get_client(self) -> ControllerClient:
        client = self._client
        if client is None:
            raise ClientNotReadyError("Site Controller client has not been created")
        return client

    def peek(self) -> ControllerClient | None:
        return self._client

    def swap_client(self, new_client: ControllerClient) -> ControllerClient | None:
        """Install ``new_client`` and return the previous one for cleanup.

        The handle numbers installed clients and stamps the number on
        ``new_client.version`` under the writer lock.
        """
        if new_client is None:
            raise ValueError("Cannot swap in an empty client")
        with self._write_lock:
            old = self._client
            self._version += 1
            new_client.version = self._version
            self._client = new_client
            return old


DialFunc = Callable[[SiteControllerConfig, SiteAgentMetrics | None], Awaitable[ControllerClient]]


class SiteControllerConnector:
    """Owns the Site Controller connection: creation, swap, health and cert reload.

    The certificate reload loop has an explicit lifecycle: ``start_reload_loop``
    starts it at most once no matter how often it is called, and ``close``
    stops it.
    """

    def __init__(
        self,
        config: SiteControllerConfig,
        *,
        metrics: SiteAgentMetrics | None = None,
        dial: DialFunc = dial_site_controller,
    ) -> None:
        self._config = config
        self._metrics = metrics
        self._dial = dial
        self.handle = AtomicClient()
        self.state = ComponentState("Site Controller")

        self._reload_lock = threading.Lock()
        self._reload_started = False
        self._reload_task: asyncio.Task[None] | None = None
        self._watcher: CertificateWatcher | None = None
        self._drain_tasks: set[asyncio.Task[None]] = set()

        if metrics is not None:
            metrics.track_component(self.state)

    @property
    def reload_started(self) -> bool:
        return self._reload_started

    def get_client(self) -> ControllerClient:
        return self.handle.get_client()

    def current_fingerprints(self) -> CertificateFingerprints:
        return compute_fingerprints(
            self._config.client_cert_path,
            self._config.client_key_path,
            self._config.server_ca_path,
        )

    async def create_client(self) -> None:
        """Build a new client from current TLS material and swap it in.

        On failure the previous client (if any) stays live, health is marked
        UNHEALTHY and the error is raised to the caller.
        """
        self.state.record_connection_attempt()
        logger.info(
            "Creating Site Controller client",
            extra={"address": self._config.address, "secure": self._config.secure},
        )

        try:
            fingerprints = self.current_fingerprints()
            new_client = await self._dial(self._config, self._metrics)
        except Exception as e:
            self.state.set_health(HealthStatus.UNHEALTHY)
            self.state.record_failure(e)
            logger.error(
                "Failed to create Site Controller client",
                extra={"address": self._config.address, "error": str(e)},
            )
            raise

        old_client = self.handle.swap_client(new_client)
        self.state.record_connection_success()
        self.state.set_health(HealthStatus.NOT_KNOWN)
        if self._metrics is not None:
            self._metrics.record_client_swap()
        logger.info(
            "Site Controller client ready",
            extra={"address": self._config.address, "client_version": new_client.version},
        )

        if old_client is not None:
            self._drain(old_client)

        self.start_reload_loop(fingerprints)

    def start_reload_loop(self, initial: CertificateFingerprints | None = None) -> bool:
        """Start the certificate reload loop unless it is already running.

        Returns:
            True if this call started the loop.
        """
        with self._reload_lock:
            if self._reload_started:
                return False
            self._reload_started = True

        if initial is None:
            try:
                initial = self.current_fingerprints()
            except CertificateReadError:
                # Unreadable now, so any readable material later counts as a change
                initial = CertificateFingerprints(client="", server="")

        self._reload_task = asyncio.get_running_loop().create_task(
            self.check_and_reload_certs(initial)
        )
        logger.info("Started certificate reload routine")
        return True

    async def check_and_reload_certs(self, initial: CertificateFingerprints) -> None:
        """Re-dial whenever the certificate fingerprints change."""
        self._watcher = CertificateWatcher(
            name="site-controller",
            read_fingerprints=self.current_fingerprints,
            on_change=self.create_client,
            interval_seconds=self._config.cert_check_interval_seconds,
        )
        await self._watcher.run(initial)

    def update_client_state(self, err: BaseException | None) -> None:
        """Record the outcome of one RPC against connectivity health.

        Only UNAVAILABLE/UNAUTHENTICATED mark the channel unhealthy; other
        errors are business errors and leave health unchanged.
        """
        if err is None:
            self.state.record_success()
            self.state.set_health(HealthStatus.HEALTHY)
            return

        self.state.record_failure(err)
        if is_connectivity_error(err):
            self.state.set_health(HealthStatus.UNHEALTHY)
            logger.error("Site Controller connection down", extra={"error": str(err)})
        else:
            logger.info("Site Controller application error", extra={"error": str(err)})

    def get_state(self) -> list[str]:
        lines = [f"Site Controller Address: {self._config.address}"]
        lines.extend(self.state.status_lines())
        lines.append(f"Site Controller Client Version: {self.handle.version}")
        return lines

    def _drain(self, old_client: ControllerClient) -> None:
        async def close_old() -> None:
            try:
                await old_client.close(CLIENT_DRAIN_GRACE_SECONDS)
            except Exception as e:
                logger.warning("Failed to close replaced client", extra={"error": str(e)})

        task = asyncio.get_running_loop().create_task(close_old())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def close(self) -> None:
        """Stop the reload loop and close the live client."""
        if self._watcher is not None:
            self._watcher.stop()
        if self._reload_task is not None:
            self._reload_task.cancel()
            try:
                await self._reload_task
            except asyncio.CancelledError:
                pass
        if self._drain_tasks:
            await asyncio.gather(*self._drain_tasks, return_exceptions=True)

        client = self.handle.peek()
        if client is not None:
            await client.close()
