"""Creates containers on a Docker daemon and keeps the settings that govern them."""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import os
import random
import re
import sys
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional, Protocol, TextIO, TypeVar
from urllib.parse import urlsplit

from dockertestkit.client import (
    DEFAULT_DOCKER_HOST,
    DockerAPIError,
    DockerClient,
    NotFoundError,
    new_docker_client,
)
from dockertestkit.config import ContainersConfig
from dockertestkit.container import DockerContainer
from dockertestkit.mounts import map_to_docker_mounts
from dockertestkit.ports import parse_port_specs
from dockertestkit.request import ContainerRequest, ReaperOptions

BRIDGE = "bridge"
PODMAN = "podman"
REAPER_DEFAULT = "reaper_default"
MANAGED_LABEL = "dockertestkit"

_INITIAL_INTERVAL = 0.5
_MULTIPLIER = 1.5
_RANDOMIZATION = 0.5
_MAX_INTERVAL = 60.0
_MAX_ELAPSED = 15 * 60.0
_PLATFORM_PART = re.compile(r"[A-Za-z0-9_.-]+")

_T = TypeVar("_T")

_logger = logging.getLogger("dockertestkit")


class _Reaper(Protocol):
    def connect(self) -> Optional[Callable[[], None]]: ...

    def labels(self) -> dict[str, str]: ...


ReaperFactory = Callable[["DockerProvider", list], _Reaper]


@dataclass
class ProviderOptions:
    """Settings a provider is created with."""

    logger: logging.Logger = _logger
    default_network: str = ""
    default_bridge_network_name: str = ""
    reaper_factory: Optional[ReaperFactory] = None


ProviderOption = Callable[[ProviderOptions], None]


def with_default_bridge_network(name: str) -> ProviderOption:
    """Option naming the bridge network the daemon attaches containers to by itself."""

    def apply(options: ProviderOptions) -> None:
        options.default_bridge_network_name = name

    return apply


def with_default_network(name: str) -> ProviderOption:
    """Option naming the network every container is attached to."""

    def apply(options: ProviderOptions) -> None:
        options.default_network = name

    return apply


def _retry(operation: Callable[[], _T], what: str) -> _T:
    """Retry a daemon call with exponential backoff; a missing object is not retried."""
    interval = _INITIAL_INTERVAL
    deadline = time.monotonic() + _MAX_ELAPSED
    while True:
        try:
            return operation()
        except NotFoundError:
            raise
        except DockerAPIError as exc:
            if time.monotonic() >= deadline:
                raise
            _logger.warning("Failed to %s: %s, will retry", what, exc)
            delta = interval * _RANDOMIZATION
            time.sleep(random.uniform(interval - delta, interval + delta))
            interval = min(interval * _MULTIPLIER, _MAX_INTERVAL)


def _parse_platform(spec: str) -> tuple[str, str]:
    parts = spec.split("/")
    if len(parts) > 3 or not all(_PLATFORM_PART.fullmatch(part) for part in parts):
        raise ValueError(f"invalid platform {spec}: expected os[/arch[/variant]]")
    return parts[0].lower(), parts[1].lower() if len(parts) > 1 else ""


def _is_container_mode(network_mode: str) -> bool:
    parts = network_mode.split(":", 1)
    return len(parts) > 1 and parts[0] == "container"


def _in_a_container() -> bool:
    return os.path.exists("/.dockerenv")


def _display_build_log(stream: Iterable[bytes], out: TextIO) -> None:
    for raw in stream:
        line = raw.strip()
        if not line:
            continue
        message = json.loads(line)
        if message.get("error"):
            raise DockerAPIError(str(message["error"]))
        if message.get("stream"):
            out.write(message["stream"])
        elif message.get("status"):
            out.write(f"{message['status']}\n")
    out.flush()


class DockerProvider:
    """Creates and finds containers through one Docker client."""

    def __init__(
        self,
        client: Any,
        host: str,
        config: ContainersConfig,
        options: Optional[ProviderOptions] = None,
    ) -> None:
        self.client = client
        self.host = host
        self.options = options or ProviderOptions()
        self._config = config
        self._host_cache = ""

    @property
    def logger(self) -> logging.Logger:
        return self.options.logger

    def config(self) -> ContainersConfig:
        """Settings read from the properties file and the environment."""
        return self._config

    def health(self) -> None:
        """Raise DockerAPIError if the daemon cannot be reached."""
        self.client.ping()

    def daemon_host(self) -> str:
        """Host or address where container ports are exposed; ``TC_HOST`` overrides it."""
        if self._host_cache:
            return self._host_cache

        override = os.environ.get("TC_HOST")
        if override is not None:
            self._host_cache = override
            return self._host_cache

        parts = urlsplit(self.client.daemon_host())
        if parts.scheme in ("http", "https", "tcp"):
            self._host_cache = parts.hostname or ""
        elif parts.scheme in ("unix", "npipe"):
            if _in_a_container():
                try:
                    self._host_cache = self.get_gateway_ip()
                except (DockerAPIError, LookupError):
                    self._host_cache = "localhost"
            else:
                self._host_cache = "localhost"
        else:
            raise ValueError("could not determine host through env or docker host")
        return self._host_cache

    def _print_reaper_banner(self, resource: str) -> None:
        self.logger.warning(
            "Ryuk has been disabled for the %s. "
            "This can cause unexpected behavior in your environment.",
            resource,
        )

    def default_network(self) -> str:
        """The bridge network if it exists, otherwise ``reaper_default``, created when missing."""
        bridge = self.options.default_bridge_network_name
        reaper_exists = False
        for network in self.client.network_list():
            name = network.get("Name")
            if name == bridge:
                return bridge
            if name == REAPER_DEFAULT:
                reaper_exists = True

        if not reaper_exists:
            self.client.network_create(
                REAPER_DEFAULT,
                {"Driver": BRIDGE, "Attachable": True, "Labels": {MANAGED_LABEL: "true"}},
            )
        return REAPER_DEFAULT

    def _ensure_default_network(self) -> str:
        if not self.options.default_network:
            self.options.default_network = self.default_network()
        return self.options.default_network

    def _connect_reaper(self, reaper_options: list) -> tuple[Optional[Callable[[], None]], dict]:
        factory = self.options.reaper_factory
        if factory is None:
            self._print_reaper_banner("container")
            return None, {}
        try:
            reaper = factory(self, reaper_options)
        except DockerAPIError as exc:
            raise DockerAPIError(f"{exc}: creating reaper failed") from exc
        try:
            signal = reaper.connect()
        except (DockerAPIError, OSError) as exc:
            raise DockerAPIError(f"{exc}: connecting to reaper failed") from exc
        return signal, dict(reaper.labels())

    def build_image(self, img: ContainerRequest) -> str:
        """Build an image from the request's context and return its ``repo:tag``."""
        repo_tag = f"{uuid.uuid4()}:{uuid.uuid4()}"
        context = img.get_context()
        data = context if isinstance(context, (bytes, bytearray)) else context.read()

        response = _retry(
            lambda: self.client.image_build(
                data,
                [repo_tag],
                dockerfile=img.get_dockerfile(),
                build_args=img.get_build_args(),
                auth_configs=img.get_auth_configs(),
            ),
            "build image",
        )
        with response:
            if img.should_print_build_log():
                _display_build_log(response, sys.stderr)
            # The build only completes once the daemon's answer is read to the end.
            response.read()
        return repo_tag

    def _attempt_to_pull_image(self, tag: str, platform: str, registry_auth: str) -> None:
        stream = _retry(
            lambda: self.client.image_pull(tag, platform=platform, registry_auth=registry_auth),
            "pull image",
        )
        with stream:
            stream.read()

    def _resolve_image(self, req: ContainerRequest) -> tuple[str, Optional[str]]:
        tag = req.image
        platform: Optional[str] = None
        wanted_os = wanted_arch = ""
        if req.image_platform:
            wanted_os, wanted_arch = _parse_platform(req.image_platform)
            platform = req.image_platform

        if req.always_pull_image:
            should_pull = True
        else:
            should_pull = False
            try:
                image = self.client.image_inspect(tag)
            except NotFoundError:
                image = {}
                should_pull = True
            if platform is not None and (
                image.get("Os") != wanted_os
                or (wanted_arch and image.get("Architecture") != wanted_arch)
            ):
                should_pull = True

        if should_pull:
            self._attempt_to_pull_image(tag, req.image_platform, req.registry_cred)
        return tag, platform

    def create_container(self, req: ContainerRequest) -> DockerContainer:
        """Create the requested container without starting it."""
        req = dataclasses.replace(
            req, networks=list(req.networks), labels=dict(req.labels or {})
        )

        default_network = self._ensure_default_network()
        if default_network != self.options.default_bridge_network_name:
            if default_network not in req.networks:
                req.networks.append(default_network)

        env = [f"{key}={value}" for key, value in req.env.items()]

        reaper_options = ReaperOptions(image_name=req.reaper_image)
        for option in req.reaper_options:
            option(reaper_options)

        is_reaper = bool(reaper_options.image_name) and (
            req.image.lower() == reaper_options.image_name.lower()
        )
        termination_signal = None
        if not req.skip_reaper and not is_reaper:
            termination_signal, reaper_labels = self._connect_reaper(req.reaper_options)
            for key, value in reaper_labels.items():
                req.labels.setdefault(key, value)
        elif not is_reaper:
            self._print_reaper_banner("container")

        req.validate()

        platform: Optional[str] = None
        if req.should_build_image():
            tag = self.build_image(req)
        else:
            tag, platform = self._resolve_image(req)

        exposed_ports = list(req.exposed_ports)
        if not exposed_ports and not _is_container_mode(req.network_mode):
            image = self.client.image_inspect(tag)
            exposed_ports.extend(((image.get("ContainerConfig") or {}).get("ExposedPorts") or {}))

        exposed, bindings = parse_port_specs(exposed_ports)

        config: dict[str, Any] = {
            "Image": tag,
            "Env": env,
            "ExposedPorts": {str(port): {} for port in sorted(exposed)},
            "Labels": req.labels,
            "Hostname": req.hostname,
            "User": req.user,
        }
        if req.entrypoint:
            config["Entrypoint"] = list(req.entrypoint)
        if req.cmd:
            config["Cmd"] = list(req.cmd)

        host_config: dict[str, Any] = {
            **req.resources,
            "ExtraHosts": list(req.extra_hosts),
            "PortBindings": {
                str(port): [{"HostIp": b.host_ip, "HostPort": b.host_port} for b in port_bindings]
                for port, port_bindings in bindings.items()
            },
            "Binds": list(req.binds),
            "Mounts": map_to_docker_mounts(req.mounts),
            "Tmpfs": dict(req.tmpfs),
            "AutoRemove": req.auto_remove,
            "Privileged": req.privileged,
            "NetworkMode": req.network_mode,
            "ShmSize": req.shm_size,
            "CapAdd": list(req.cap_add),
            "CapDrop": list(req.cap_drop),
        }

        # The daemon accepts one network at creation; the rest are connected afterwards.
        endpoints: dict[str, Any] = {}
        if req.networks:
            first = req.networks[0]
            try:
                network = self.get_network(first)
            except DockerAPIError:
                network = None
            if network is not None:
                endpoints[first] = {
                    "Aliases": req.network_aliases.get(first),
                    "NetworkID": network.get("Id", ""),
                }

        response = self.client.container_create(
            config, host_config, {"EndpointsConfig": endpoints}, platform, req.name
        )
        container_id = response["Id"]

        for name in req.networks[1:]:
            try:
                network = self.get_network(name)
            except DockerAPIError:
                continue
            self.client.network_connect(
                network.get("Id", ""), container_id, req.network_aliases.get(name)
            )

        container = DockerContainer(
            container_id,
            self,
            image=tag,
            waiting_for=req.waiting_for,
            image_was_built=req.should_build_image(),
            termination_signal=termination_signal,
            skip_reaper=req.skip_reaper,
            logger=self.logger,
        )

        for file in req.files:
            try:
                container.copy_file_to_container(
                    file.host_file_path, file.container_file_path, file.file_mode
                )
            except (OSError, DockerAPIError) as exc:
                raise RuntimeError(
                    f"can't copy {file.host_file_path} to container: {exc}"
                ) from exc

        return container

    def find_container_by_name(self, name: str) -> Optional[dict[str, Any]]:
        """The first running container whose name is exactly ``name``, if any."""
        if not name:
            return None
        containers = self.client.container_list({"name": [f"^{name}$"]})
        return containers[0] if containers else None

    def reuse_or_create_container(self, req: ContainerRequest) -> DockerContainer:
        """Attach to a container with the requested name, or create one."""
        found = self.find_container_by_name(req.name)
        if found is None:
            return self.create_container(req)

        termination_signal = None
        if not req.skip_reaper:
            termination_signal, _ = self._connect_reaper(req.reaper_options)
        else:
            self._print_reaper_banner("container")

        return DockerContainer(
            found["Id"],
            self,
            image=found.get("Image", ""),
            waiting_for=req.waiting_for,
            termination_signal=termination_signal,
            skip_reaper=req.skip_reaper,
            is_running=found.get("State") == "running",
            logger=self.logger,
        )

    def run_container(self, req: ContainerRequest) -> DockerContainer:
        """Create the requested container and start it.

        If starting fails, the raised error carries the container as ``container``.
        """
        container = self.create_container(req)
        try:
            container.start()
        except Exception as exc:
            exc.container = container
            raise
        return container

    def get_network(self, name: str) -> dict[str, Any]:
        """Inspect a network by name."""
        return self.client.network_inspect(name)

    def get_gateway_ip(self) -> str:
        """Gateway address of the default network."""
        network = self.get_network(self._ensure_default_network())
        for ipam in (network.get("IPAM") or {}).get("Config") or []:
            gateway = ipam.get("Gateway", "")
            if gateway:
                return gateway
        raise LookupError("Failed to get gateway IP from network settings")


def new_docker_provider(*args: ProviderOption) -> DockerProvider:
    """Create a provider from the settings file and environment, applying options in order."""
    options = ProviderOptions()
    for option in args:
        option(options)

    client, host, config = new_docker_client()
    try:
        client.ping()
    except DockerAPIError:
        client = DockerClient(os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST)

    return DockerProvider(client, host, config, options)


class ProviderType(enum.Enum):
    """The kinds of container engine that can be driven."""

    DOCKER = 0
    PODMAN = 1

    def get_provider(self, *args: ProviderOption) -> DockerProvider:
        """A provider for this engine, with its bridge network name set."""
        bridge = PODMAN if self is ProviderType.PODMAN else BRIDGE
        return new_docker_provider(*args, with_default_bridge_network(bridge))