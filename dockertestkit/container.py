"""Handles on containers and networks created through a Docker daemon."""

from __future__ import annotations

import errno
import io
import logging
import os
import posixpath
import stat
import tarfile
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional, Protocol

from dockertestkit.client import SESSION_ID, DockerAPIError
from dockertestkit.ports import Port, PortBinding

STDOUT_LOG = "STDOUT"
STDERR_LOG = "STDERR"

# Index is the stream type from the multiplexing header; 0 is stdin, never followed.
_LOG_TYPES = ("", STDOUT_LOG, STDERR_LOG)
_STREAM_HEADER_SIZE = 8
_EXEC_POLL_INTERVAL = 0.1
_LOG_RECONNECT_DELAY = 0.1
_PRODUCER_JOIN_TIMEOUT = 5.0
_NIL_SESSION = uuid.UUID(int=0)


@dataclass(frozen=True)
class Log:
    """One chunk of container output and the stream it came from."""

    log_type: str
    content: bytes


LogConsumer = Callable[[Log], None]


class _Provider(Protocol):
    client: Any

    def daemon_host(self) -> str: ...


class _WaitStrategy(Protocol):
    def wait_until_ready(self, target: DockerContainer) -> None: ...


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def demultiplex(stream: BinaryIO) -> Iterator[tuple[int, bytes]]:
    """Split a multiplexed Docker output stream into (stream type, payload) frames."""
    while True:
        header = _read_exact(stream, _STREAM_HEADER_SIZE)
        if not header:
            return
        if len(header) < _STREAM_HEADER_SIZE:
            raise ValueError("truncated stream header")
        size = int.from_bytes(header[4:], "big")
        payload = _read_exact(stream, size)
        if len(payload) < size:
            raise ValueError("truncated stream frame")
        yield header[0], payload


def _is_dir(path: str) -> bool:
    return stat.S_ISDIR(os.stat(path).st_mode)


def _tar_file(content: bytes, container_path: str, file_mode: int) -> io.BytesIO:
    buffer = io.BytesIO()
    info = tarfile.TarInfo(posixpath.basename(container_path))
    info.mode = file_mode
    info.size = len(content)
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        archive.addfile(info, io.BytesIO(content))
    buffer.seek(0)
    return buffer


def _tar_directory(source: str, file_mode: int) -> io.BytesIO:
    root = Path(source).resolve()
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for path in [root, *sorted(root.rglob("*"))]:
            arcname = posixpath.join(root.name, *path.relative_to(root).parts)
            info = archive.gettarinfo(str(path), arcname=arcname)
            info.mode = file_mode
            if info.isreg():
                with path.open("rb") as handle:
                    archive.addfile(info, handle)
            else:
                archive.addfile(info)
    buffer.seek(0)
    return buffer


def _binding(raw: dict[str, Any]) -> PortBinding:
    return PortBinding(host_ip=raw.get("HostIp", "") or "", host_port=raw.get("HostPort", "") or "")


def _network_settings(inspect: dict[str, Any]) -> dict[str, Any]:
    return inspect.get("NetworkSettings") or {}


def _attached_networks(inspect: dict[str, Any]) -> dict[str, Any]:
    return _network_settings(inspect).get("Networks") or {}


def _ports_of(inspect: dict[str, Any]) -> dict[Port, list[PortBinding]]:
    raw_ports = _network_settings(inspect).get("Ports") or {}
    return {
        Port(key): [_binding(binding) for binding in (bindings or [])]
        for key, bindings in raw_ports.items()
    }


class DockerContainer:
    """A container created on a Docker daemon."""

    def __init__(
        self,
        id: str,
        provider: _Provider,
        *,
        image: str = "",
        waiting_for: Optional[_WaitStrategy] = None,
        image_was_built: bool = False,
        session_id: str = SESSION_ID,
        termination_signal: Optional[Callable[[], None]] = None,
        skip_reaper: bool = False,
        is_running: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.id = id
        self.provider = provider
        self.image = image
        self.waiting_for = waiting_for
        self.image_was_built = image_was_built
        self.skip_reaper = skip_reaper
        self.logger = logger or logging.getLogger(__name__)
        self._session_id = uuid.UUID(session_id)
        self._termination_signal = termination_signal
        self._is_running = is_running
        self._consumers: list[LogConsumer] = []
        self._raw: Optional[dict[str, Any]] = None
        self._stop_producer = threading.Event()
        self._producer: Optional[threading.Thread] = None
        self._producer_lock = threading.Lock()
        self._log_stream: Optional[BinaryIO] = None

    @property
    def _client(self) -> Any:
        return self.provider.client

    def get_container_id(self) -> str:
        return self.id

    def is_running(self) -> bool:
        return self._is_running

    def session_id(self) -> str:
        return str(self._session_id)

    def _inspect(self) -> dict[str, Any]:
        return self._client.container_inspect(self.id)

    def endpoint(self, proto: str = "") -> str:
        """``proto://host:port`` for the first exposed port, or ``host:port`` without a proto."""
        first = next(iter(self.ports()), Port(""))
        return self.port_endpoint(first, proto)

    def port_endpoint(self, port: str, proto: str = "") -> str:
        """``proto://host:port`` for the given exposed port, or ``host:port`` without a proto."""
        host = self.host()
        outer = self.mapped_port(port)
        prefix = f"{proto}://" if proto else ""
        return f"{prefix}{host}:{outer.port()}"

    def host(self) -> str:
        """Host name or address where the container's ports are exposed."""
        return self.provider.daemon_host()

    def mapped_port(self, port: str) -> Port:
        """The host port a container port is published on."""
        wanted = Port(port)
        inspect = self._inspect()
        if (inspect.get("HostConfig") or {}).get("NetworkMode") == "host":
            return wanted
        for key, bindings in _ports_of(inspect).items():
            if key.port() != wanted.port():
                continue
            if wanted.proto() and key.proto() != wanted.proto():
                continue
            if not bindings:
                continue
            return Port.parse(f"{bindings[0].host_port}/{key.proto()}")
        raise LookupError("port not found")

    def ports(self) -> dict[Port, list[PortBinding]]:
        """Exposed container ports and their host bindings."""
        return _ports_of(self._inspect())

    def start(self) -> None:
        """Start the container and wait for its strategy, if any."""
        short_id = self.id[:12]
        self.logger.info("Starting container id: %s image: %s", short_id, self.image)
        self._client.container_start(self.id)
        if self.waiting_for is not None:
            self.logger.info("Waiting for container id %s image: %s", short_id, self.image)
            self.waiting_for.wait_until_ready(self)
        self.logger.info("Container is ready id: %s image: %s", short_id, self.image)
        self._is_running = True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the container, killing it after ``timeout`` seconds when given.

        Without a timeout the container's own stop timeout or the engine default
        applies; a negative timeout waits forever.
        """
        short_id = self.id[:12]
        self.logger.info("Stopping container id: %s image: %s", short_id, self.image)
        seconds = int(timeout) if timeout is not None else None
        self._client.container_stop(self.id, seconds)
        self.logger.info("Container is stopped id: %s image: %s", short_id, self.image)
        self._is_running = False

    def terminate(self) -> None:
        """Remove the container, its volumes and any image built for it."""
        if self._termination_signal is not None:
            self._termination_signal()
        self._client.container_remove(self.id, remove_volumes=True, force=True)
        if self.image_was_built:
            self._client.image_remove(self.image, force=True, prune_children=True)
        self._client.close()
        self._session_id = _NIL_SESSION
        self._is_running = False

    def logs(self) -> BinaryIO:
        """Everything the container wrote to stdout and stderr so far."""
        with self._client.container_logs(self.id) as stream:
            content = b"".join(payload for _, payload in demultiplex(stream))
        return io.BytesIO(content)

    def follow_output(self, consumer: LogConsumer) -> None:
        """Register a callable that receives each Log the producer reads."""
        self._consumers.append(consumer)

    def _dispatch(self, stream_type: int, payload: bytes) -> None:
        if stream_type > 2:
            # Undocumented stream types are treated as stdout.
            self.logger.warning("received invalid log type: %d", stream_type)
            stream_type = 1
        log = Log(log_type=_LOG_TYPES[stream_type], content=payload)
        for consumer in list(self._consumers):
            consumer(log)

    def _produce_logs(self) -> None:
        since = ""
        while not self._stop_producer.is_set():
            try:
                stream = self._client.container_logs(self.id, follow=True, since=since)
            except DockerAPIError:
                self.logger.exception("cannot follow logs of container %s", self.id[:12])
                return
            with self._producer_lock:
                if self._stop_producer.is_set():
                    stream.close()
                    return
                self._log_stream = stream
            try:
                for stream_type, payload in demultiplex(stream):
                    if payload:
                        self._dispatch(stream_type, payload)
            except (OSError, ValueError):
                if self._stop_producer.is_set():
                    return
            finally:
                with self._producer_lock:
                    self._log_stream = None
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass
            now = time.time_ns()
            since = f"{now // 1_000_000_000}.{now % 1_000_000_000:09d}"
            self._stop_producer.wait(_LOG_RECONNECT_DELAY)

    def start_log_producer(self) -> None:
        """Start a background thread that feeds container output to the consumers."""
        self._stop_producer.clear()
        self._producer = threading.Thread(
            target=self._produce_logs, name=f"logs-{self.id[:12]}", daemon=True
        )
        self._producer.start()

    def stop_log_producer(self) -> None:
        """Stop the background log thread."""
        self._stop_producer.set()
        with self._producer_lock:
            stream = self._log_stream
        if stream is not None:
            try:
                getattr(stream, "raw", stream).close()
            except (OSError, ValueError):
                pass
        if self._producer is not None:
            self._producer.join(_PRODUCER_JOIN_TIMEOUT)
            self._producer = None

    def name(self) -> str:
        return self._inspect().get("Name", "")

    def state(self) -> dict[str, Any]:
        """The container's running state.

        When inspection fails after an earlier success, the error carries the
        last known state as ``last_known_state``.
        """
        try:
            inspect = self._inspect()
        except DockerAPIError as exc:
            if self._raw is not None:
                exc.last_known_state = self._raw.get("State")
            raise
        self._raw = inspect
        return inspect.get("State")

    def networks(self) -> list[str]:
        """Names of the networks the container is attached to."""
        return list(_attached_networks(self._inspect()))

    def container_ip(self) -> str:
        """IP address on the primary network, or on the only attached network."""
        inspect = self._inspect()
        ip = _network_settings(inspect).get("IPAddress", "") or ""
        if not ip:
            networks = _attached_networks(inspect)
            if len(networks) == 1:
                (only,) = networks.values()
                ip = only.get("IPAddress", "") or ""
        return ip

    def container_ips(self) -> list[str]:
        """IP addresses on every attached network."""
        return [
            network.get("IPAddress", "") or ""
            for network in _attached_networks(self._inspect()).values()
        ]

    def network_aliases(self) -> dict[str, list[str]]:
        """Aliases of the container on each attached network."""
        return {
            name: list(network.get("Aliases") or [])
            for name, network in _attached_networks(self._inspect()).items()
        }

    def exec(self, cmd: list[str]) -> tuple[int, BinaryIO]:
        """Run a command in the container; returns its exit code and raw multiplexed output."""
        exec_id = self._client.exec_create(self.id, cmd)
        with self._client.exec_start(exec_id) as stream:
            output = stream.read()
        while True:
            details = self._client.exec_inspect(exec_id)
            if not details.get("Running"):
                return int(details.get("ExitCode") or 0), io.BytesIO(output)
            time.sleep(_EXEC_POLL_INTERVAL)

    def copy_file_from_container(self, file_path: str) -> BinaryIO:
        """The content of one file inside the container."""
        with self._client.copy_from_container(self.id, file_path) as stream:
            with tarfile.open(fileobj=stream, mode="r|") as archive:
                member = archive.next()
                if member is None:
                    raise FileNotFoundError(errno.ENOENT, "empty archive for", file_path)
                extracted = archive.extractfile(member)
                data = extracted.read() if extracted is not None else b""
        return io.BytesIO(data)

    def copy_dir_to_container(
        self, host_dir_path: str, container_parent_path: str, file_mode: int
    ) -> None:
        """Copy a host directory into the container under an existing parent path."""
        if not _is_dir(host_dir_path):
            raise NotADirectoryError(f"path {host_dir_path} is not a directory")
        archive = _tar_directory(host_dir_path, file_mode)
        parent = posixpath.dirname(container_parent_path)
        self._client.copy_to_container(self.id, parent, archive)

    def copy_file_to_container(
        self, host_file_path: str, container_file_path: str, file_mode: int
    ) -> None:
        """Copy a host file, or a whole directory, into the container."""
        if _is_dir(host_file_path):
            self.copy_dir_to_container(host_file_path, container_file_path, file_mode)
            return
        content = Path(host_file_path).read_bytes()
        self.copy_to_container(content, container_file_path, file_mode)

    def copy_to_container(self, file_content: bytes, container_file_path: str, file_mode: int) -> None:
        """Write bytes to a file inside the container."""
        archive = _tar_file(file_content, container_file_path, file_mode)
        parent = posixpath.dirname(container_file_path)
        self._client.copy_to_container(self.id, parent, archive)


@dataclass
class DockerNetwork:
    """A network created on a Docker daemon."""

    id: str
    driver: str
    name: str
    provider: Any = None
    termination_signal: Optional[Callable[[], None]] = None

    def remove(self) -> None:
        """Remove the network from the daemon."""
        if self.termination_signal is not None:
            self.termination_signal()
        self.provider.client.network_remove(self.id)