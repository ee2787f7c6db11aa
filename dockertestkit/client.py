"""A small HTTP client for the Docker Engine API."""

from __future__ import annotations

import base64
import http.client
import io
import json
import os
import socket
import ssl
import threading
import uuid
from collections.abc import Iterable, Mapping
from typing import Any, BinaryIO, Optional, Union
from urllib.parse import quote, urlencode, urlsplit

from dockertestkit.config import ContainersConfig, load_config

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
MAX_API_VERSION = "1.41"
MIN_API_VERSION = "1.24"
SESSION_HEADER = "x-tc-sid"
SESSION_ID = str(uuid.uuid4())

_RETRYABLE = (http.client.RemoteDisconnected, ConnectionResetError, BrokenPipeError)
_SUPPORTED_SCHEMES = frozenset({"unix", "npipe", "tcp", "http", "https"})

Body = Union[bytes, BinaryIO, Mapping[str, Any], list, None]


class DockerAPIError(Exception):
    """The Docker daemon could not be reached or answered with an error."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class NotFoundError(DockerAPIError):
    """The requested object does not exist on the daemon."""


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str) -> None:
        super().__init__("localhost", timeout=None)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class _ResponseStream(io.RawIOBase):
    """A streamed response body that owns its connection."""

    def __init__(self, connection: http.client.HTTPConnection, response: http.client.HTTPResponse):
        super().__init__()
        self._connection = connection
        self._response = response

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        return self._response.readinto(buffer)

    def close(self) -> None:
        if not self.closed:
            self._response.close()
            self._connection.close()
        super().close()


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))


def _segment(value: str) -> str:
    return quote(value, safe="")


def _image_segment(image: str) -> str:
    return quote(image, safe="/:@")


def _split_reference(image: str) -> tuple[str, str]:
    """Split an image reference into repository and tag (or digest)."""
    if "@" in image:
        name, digest = image.split("@", 1)
        return name, digest
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, "latest"


def _error_from(status: int, payload: bytes) -> DockerAPIError:
    text = payload.decode("utf-8", errors="replace").strip()
    try:
        decoded = json.loads(text) if text else None
    except ValueError:
        decoded = None
    if isinstance(decoded, dict) and decoded.get("message"):
        message = str(decoded["message"])
    else:
        message = text or http.client.responses.get(status, "error")
    if status == 404:
        return NotFoundError(message, status)
    return DockerAPIError(message, status)


def _decode_json(payload: bytes) -> Any:
    if not payload.strip():
        return None
    return json.loads(payload)


class DockerClient:
    """Talks to one Docker daemon over a Unix socket or TCP."""

    def __init__(self, host: str, headers: Optional[Mapping[str, str]] = None) -> None:
        if "://" not in host:
            raise ValueError(f"unable to parse docker host `{host}`")
        scheme, address = host.split("://", 1)
        scheme = scheme.lower()
        if scheme not in _SUPPORTED_SCHEMES:
            raise ValueError(f"unsupported protocol scheme {scheme!r} in docker host `{host}`")
        self._host = host
        self._scheme = scheme
        self._address = address
        if scheme in ("tcp", "http", "https"):
            parts = urlsplit(host)
            self._hostname = parts.hostname or "localhost"
            self._port = parts.port
        else:
            self._hostname = "localhost"
            self._port = None
        self._headers = dict(headers or {})
        self._tls: Optional[ssl.SSLContext] = None
        self._version: Optional[str] = None
        self._idle: list[http.client.HTTPConnection] = []
        self._pool_lock = threading.Lock()

    # connection handling

    def _connect(self) -> http.client.HTTPConnection:
        if self._scheme == "unix":
            return _UnixHTTPConnection(self._address)
        if self._scheme == "npipe":
            raise DockerAPIError(f"named pipe connections are not supported: {self._host}")
        if self._scheme == "https" or self._tls is not None:
            context = self._tls or ssl.create_default_context()
            return http.client.HTTPSConnection(self._hostname, self._port, context=context)
        return http.client.HTTPConnection(self._hostname, self._port)

    def _acquire(self) -> tuple[http.client.HTTPConnection, bool]:
        with self._pool_lock:
            if self._idle:
                return self._idle.pop(), True
        return self._connect(), False

    def _release(self, connection: http.client.HTTPConnection) -> None:
        with self._pool_lock:
            self._idle.append(connection)

    def daemon_host(self) -> str:
        """The daemon address this client was created with."""
        return self._host

    def close(self) -> None:
        """Close idle keep-alive connections."""
        with self._pool_lock:
            idle, self._idle = self._idle, []
        for connection in idle:
            connection.close()

    def _api_version(self) -> str:
        if self._version is not None:
            return self._version
        try:
            info = self.ping()
        except DockerAPIError:
            return MAX_API_VERSION
        server = info.get("api_version") or MIN_API_VERSION
        self._version = min(server, MAX_API_VERSION, key=_version_key)
        return self._version

    def _url(self, path: str, params: Optional[Mapping[str, Any]], versioned: bool) -> str:
        if versioned:
            path = f"/v{self._api_version()}{path}"
        query = {key: value for key, value in (params or {}).items() if value is not None}
        if query:
            path = f"{path}?{urlencode(query, doseq=True)}"
        return path

    def _prepare(
        self, body: Body, headers: Optional[Mapping[str, str]]
    ) -> tuple[Optional[bytes], dict[str, str]]:
        all_headers = {**self._headers, **(headers or {})}
        if isinstance(body, (Mapping, list)):
            all_headers.setdefault("Content-Type", "application/json")
            return json.dumps(body).encode("utf-8"), all_headers
        if body is not None and not isinstance(body, (bytes, bytearray)):
            return body.read(), all_headers
        return body, all_headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Body = None,
        headers: Optional[Mapping[str, str]] = None,
        versioned: bool = True,
    ) -> tuple[http.client.HTTPMessage, bytes]:
        url = self._url(path, params, versioned)
        data, all_headers = self._prepare(body, headers)
        try:
            connection, reused = self._acquire()
            try:
                response, payload = self._round_trip(connection, method, url, data, all_headers)
            except _RETRYABLE:
                connection.close()
                if not reused:
                    raise
                connection = self._connect()
                response, payload = self._round_trip(connection, method, url, data, all_headers)
            except BaseException:
                connection.close()
                raise
        except (OSError, http.client.HTTPException) as exc:
            raise DockerAPIError(f"cannot connect to the Docker daemon at {self._host}: {exc}") from exc

        if response.will_close:
            connection.close()
        else:
            self._release(connection)
        if response.status >= 400:
            raise _error_from(response.status, payload)
        return response.headers, payload

    @staticmethod
    def _round_trip(connection, method, url, data, headers):
        connection.request(method, url, body=data, headers=headers)
        response = connection.getresponse()
        return response, response.read()

    def _stream(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Body = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> io.BufferedReader:
        url = self._url(path, params, True)
        data, all_headers = self._prepare(body, headers)
        connection = self._connect()
        try:
            connection.request(method, url, body=data, headers=all_headers)
            response = connection.getresponse()
        except (OSError, http.client.HTTPException) as exc:
            connection.close()
            raise DockerAPIError(f"cannot connect to the Docker daemon at {self._host}: {exc}") from exc
        if response.status >= 400:
            try:
                raise _error_from(response.status, response.read())
            finally:
                connection.close()
        return io.BufferedReader(_ResponseStream(connection, response))

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        _, payload = self._request(method, path, **kwargs)
        return _decode_json(payload)

    # system

    def ping(self) -> dict[str, Any]:
        """Check the daemon is reachable and report what it says about itself."""
        headers, _ = self._request("GET", "/_ping", versioned=False)
        return {
            "api_version": headers.get("API-Version", ""),
            "os_type": headers.get("OSType", ""),
            "experimental": headers.get("Docker-Experimental", "") == "true",
            "builder_version": headers.get("Builder-Version", ""),
        }

    # containers

    def container_create(
        self,
        config: Mapping[str, Any],
        host_config: Optional[Mapping[str, Any]] = None,
        networking_config: Optional[Mapping[str, Any]] = None,
        platform: Optional[str] = None,
        name: str = "",
    ) -> dict[str, Any]:
        """Create a container; returns the daemon's answer with ``Id`` and ``Warnings``."""
        body = dict(config)
        if host_config is not None:
            body["HostConfig"] = dict(host_config)
        if networking_config is not None:
            body["NetworkingConfig"] = dict(networking_config)
        params = {"name": name or None, "platform": platform or None}
        return self._json("POST", "/containers/create", params=params, body=body)

    def container_start(self, container_id: str) -> None:
        self._request("POST", f"/containers/{_segment(container_id)}/start")

    def container_stop(self, container_id: str, timeout: Optional[int] = None) -> None:
        """Stop a container, killing it after ``timeout`` seconds if given."""
        params = {"t": str(timeout) if timeout is not None else None}
        self._request("POST", f"/containers/{_segment(container_id)}/stop", params=params)

    def container_remove(
        self, container_id: str, remove_volumes: bool = False, force: bool = False
    ) -> None:
        params = {"v": "1" if remove_volumes else None, "force": "1" if force else None}
        self._request("DELETE", f"/containers/{_segment(container_id)}", params=params)

    def container_inspect(self, container_id: str) -> dict[str, Any]:
        return self._json("GET", f"/containers/{_segment(container_id)}/json")

    def container_list(
        self, filters: Optional[Mapping[str, Iterable[str]]] = None
    ) -> list[dict[str, Any]]:
        """List running containers, optionally filtered, e.g. ``{"name": ["^db$"]}``."""
        params = {}
        if filters:
            encoded = {key: {value: True for value in values} for key, values in filters.items()}
            params["filters"] = json.dumps(encoded)
        return self._json("GET", "/containers/json", params=params) or []

    def container_logs(
        self, container_id: str, follow: bool = False, since: str = ""
    ) -> io.BufferedReader:
        """Stream the multiplexed stdout and stderr of a container."""
        params = {
            "stdout": "1",
            "stderr": "1",
            "follow": "1" if follow else None,
            "since": since or None,
        }
        return self._stream("GET", f"/containers/{_segment(container_id)}/logs", params=params)

    # exec

    def exec_create(self, container_id: str, cmd: Iterable[str]) -> str:
        """Prepare a command inside a container; returns the exec id."""
        body = {
            "Cmd": list(cmd),
            "Detach": False,
            "AttachStdout": True,
            "AttachStderr": True,
        }
        answer = self._json("POST", f"/containers/{_segment(container_id)}/exec", body=body)
        return answer["Id"]

    def exec_start(self, exec_id: str) -> io.BufferedReader:
        """Run a prepared command and stream its multiplexed output."""
        body = {"Detach": False, "Tty": False}
        return self._stream("POST", f"/exec/{_segment(exec_id)}/start", body=body)

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return self._json("GET", f"/exec/{_segment(exec_id)}/json")

    # files

    def copy_to_container(self, container_id: str, path: str, data: Union[bytes, BinaryIO]) -> None:
        """Extract a tar archive into ``path`` inside the container."""
        params = {"path": path, "noOverwriteDirNonDir": "true"}
        self._request(
            "PUT",
            f"/containers/{_segment(container_id)}/archive",
            params=params,
            body=data,
            headers={"Content-Type": "application/x-tar"},
        )

    def copy_from_container(self, container_id: str, path: str) -> io.BufferedReader:
        """Stream a tar archive holding ``path`` from the container."""
        return self._stream(
            "GET", f"/containers/{_segment(container_id)}/archive", params={"path": path}
        )

    # images

    def image_build(
        self,
        context: Union[bytes, BinaryIO],
        tags: Iterable[str],
        dockerfile: str = "Dockerfile",
        build_args: Optional[Mapping[str, Optional[str]]] = None,
        auth_configs: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> io.BufferedReader:
        """Build an image from a tar context, removing intermediate containers."""
        params: dict[str, Any] = {
            "t": list(tags),
            "dockerfile": dockerfile,
            "rm": "1",
            "forcerm": "1",
        }
        if build_args:
            params["buildargs"] = json.dumps(dict(build_args))
        headers = {"Content-Type": "application/x-tar"}
        if auth_configs:
            encoded = json.dumps({key: dict(value) for key, value in auth_configs.items()})
            headers["X-Registry-Config"] = base64.urlsafe_b64encode(encoded.encode()).decode()
        return self._stream("POST", "/build", params=params, body=context, headers=headers)

    def image_pull(
        self, image: str, platform: str = "", registry_auth: str = ""
    ) -> io.BufferedReader:
        """Start pulling an image; the pull is finished when the stream is exhausted."""
        repository, tag = _split_reference(image)
        params = {"fromImage": repository, "tag": tag, "platform": platform.lower() or None}
        headers = {"X-Registry-Auth": registry_auth} if registry_auth else None
        return self._stream("POST", "/images/create", params=params, headers=headers)

    def image_inspect(self, image: str) -> dict[str, Any]:
        return self._json("GET", f"/images/{_image_segment(image)}/json")

    def image_remove(
        self, image: str, force: bool = False, prune_children: bool = False
    ) -> list[dict[str, Any]]:
        params = {"force": "1" if force else None, "noprune": None if prune_children else "1"}
        return self._json("DELETE", f"/images/{_image_segment(image)}", params=params) or []

    # networks

    def network_list(self) -> list[dict[str, Any]]:
        return self._json("GET", "/networks") or []

    def network_create(self, name: str, options: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """Create a network; ``options`` uses the API's field names such as ``Driver``."""
        body = {"Name": name, **dict(options or {})}
        return self._json("POST", "/networks/create", body=body)

    def network_inspect(self, name: str) -> dict[str, Any]:
        return self._json("GET", f"/networks/{_segment(name)}", params={"verbose": "true"})

    def network_connect(
        self, network_id: str, container_id: str, aliases: Optional[Iterable[str]] = None
    ) -> None:
        alias_list = list(aliases) if aliases else None
        body = {"Container": container_id, "EndpointConfig": {"Aliases": alias_list}}
        self._request("POST", f"/networks/{_segment(network_id)}/connect", body=body)

    def network_remove(self, network_id: str) -> None:
        self._request("DELETE", f"/networks/{_segment(network_id)}")


def _tls_context(cert_path: str, verify: bool = True) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=os.path.join(cert_path, "ca.pem"))
    context.load_cert_chain(
        os.path.join(cert_path, "cert.pem"), os.path.join(cert_path, "key.pem")
    )
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def new_docker_client(
    config: Optional[ContainersConfig] = None,
) -> tuple[DockerClient, str, ContainersConfig]:
    """Create a client from the settings file and environment.

    Returns the client, the daemon host it uses and the settings read.
    """
    if config is None:
        config = load_config()

    tls: Optional[ssl.SSLContext] = None
    env_cert_path = os.environ.get("DOCKER_CERT_PATH", "")
    if env_cert_path:
        tls = _tls_context(env_cert_path, verify=bool(os.environ.get("DOCKER_TLS_VERIFY")))

    if config.host:
        host = config.host
        if config.tls_verify == 1:
            tls = _tls_context(config.cert_path)
    else:
        host = os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST

    client = DockerClient(host, {SESSION_HEADER: SESSION_ID})
    client._tls = tls
    return client, host, config