"""Descriptions of the container a caller wants and how to check them."""

from __future__ import annotations

import errno
import io
import tarfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Optional

from dockertestkit.mounts import ContainerMount


class RequestValidationError(ValueError):
    """A container request has conflicting or missing settings."""


class DuplicateMountTargetError(RequestValidationError):
    """Two mounts in one request share the same target path."""

    def __init__(self, target: str) -> None:
        super().__init__(f"duplicate mount target detected: {target}")
        self.target = target


@dataclass
class FromDockerfile:
    """What is needed to build an image from a Dockerfile instead of pulling one."""

    context: str = ""
    context_archive: Optional[BinaryIO] = None
    dockerfile: str = ""
    build_args: Optional[dict[str, Optional[str]]] = None
    print_build_log: bool = False
    auth_configs: Optional[dict[str, Mapping[str, Any]]] = None


@dataclass
class ContainerFile:
    """A host file copied into the container when it is created."""

    host_file_path: str
    container_file_path: str
    file_mode: int


@dataclass
class ReaperOptions:
    """Settings for the reaper container that cleans up after a session."""

    image_name: str = ""
    registry_credentials: str = ""


ReaperOption = Callable[[ReaperOptions], None]


def with_image_name(image_name: str) -> ReaperOption:
    """Option that sets the reaper image name."""

    def apply(options: ReaperOptions) -> None:
        options.image_name = image_name

    return apply


def with_registry_credentials(registry_credentials: str) -> ReaperOption:
    """Option that sets the reaper registry credentials."""

    def apply(options: ReaperOptions) -> None:
        options.registry_credentials = registry_credentials

    return apply


def _tar_directory(path: str) -> io.BytesIO:
    root = Path(path)
    if not root.is_dir():
        raise FileNotFoundError(errno.ENOENT, "build context directory not found", path)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for entry in sorted(root.rglob("*")):
            archive.add(entry, arcname=entry.relative_to(root).as_posix(), recursive=False)
    buffer.seek(0)
    return buffer


@dataclass
class ContainerRequest:
    """The parameters used to obtain a running container."""

    from_dockerfile: FromDockerfile = field(default_factory=FromDockerfile)
    image: str = ""
    entrypoint: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    exposed_ports: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)
    labels: Optional[dict[str, str]] = None
    mounts: list[ContainerMount] = field(default_factory=list)
    tmpfs: dict[str, str] = field(default_factory=dict)
    registry_cred: str = ""
    waiting_for: Any = None
    name: str = ""
    hostname: str = ""
    extra_hosts: list[str] = field(default_factory=list)
    privileged: bool = False
    networks: list[str] = field(default_factory=list)
    network_aliases: dict[str, list[str]] = field(default_factory=dict)
    network_mode: str = ""
    resources: dict[str, Any] = field(default_factory=dict)
    files: list[ContainerFile] = field(default_factory=list)
    user: str = ""
    skip_reaper: bool = False
    reaper_image: str = ""
    reaper_options: list[ReaperOption] = field(default_factory=list)
    auto_remove: bool = False
    always_pull_image: bool = False
    image_platform: str = ""
    binds: list[str] = field(default_factory=list)
    shm_size: int = 0
    cap_add: list[str] = field(default_factory=list)
    cap_drop: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raise RequestValidationError if the request is inconsistent."""
        self._validate_context_and_image()
        self._validate_context_or_image_is_specified()
        self._validate_mounts()

    def _validate_context_and_image(self) -> None:
        if self.from_dockerfile.context and self.image:
            raise RequestValidationError(
                "you cannot specify both an Image and Context in a ContainerRequest"
            )

    def _validate_context_or_image_is_specified(self) -> None:
        build = self.from_dockerfile
        if not build.context and build.context_archive is None and not self.image:
            raise RequestValidationError("you must specify either a build context or an image")

    def _validate_mounts(self) -> None:
        seen: set[str] = set()
        for mount in self.mounts:
            if mount.target in seen:
                raise DuplicateMountTargetError(mount.target)
            seen.add(mount.target)

    def get_context(self) -> BinaryIO:
        """The build context as a tar stream: the given archive, or the context directory tarred."""
        if self.from_dockerfile.context_archive is not None:
            return self.from_dockerfile.context_archive
        return _tar_directory(self.from_dockerfile.context)

    def get_build_args(self) -> Optional[dict[str, Optional[str]]]:
        """Build arguments passed to the image build."""
        return self.from_dockerfile.build_args

    def get_dockerfile(self) -> str:
        """Path of the Dockerfile inside the context, ``Dockerfile`` by default."""
        return self.from_dockerfile.dockerfile or "Dockerfile"

    def get_auth_configs(self) -> Optional[dict[str, Mapping[str, Any]]]:
        """Registry credentials used while building."""
        return self.from_dockerfile.auth_configs

    def should_build_image(self) -> bool:
        """True when the image comes from a build context rather than a registry."""
        build = self.from_dockerfile
        return bool(build.context) or build.context_archive is not None

    def should_print_build_log(self) -> bool:
        """True when the build output should be shown."""
        return self.from_dockerfile.print_build_log