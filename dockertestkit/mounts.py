"""Container mount descriptions and their Docker Engine API form."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


class MountType(enum.Enum):
    """Kinds of mount a container can receive."""

    BIND = enum.auto()
    VOLUME = enum.auto()
    TMPFS = enum.auto()
    PIPE = enum.auto()


_DOCKER_MOUNT_TYPES = {
    MountType.BIND: "bind",
    MountType.VOLUME: "volume",
    MountType.TMPFS: "tmpfs",
    MountType.PIPE: "npipe",
}

Options = Optional[Mapping[str, Any]]


class MountSource(Protocol):
    """Anything that can be mounted into a container."""

    def source(self) -> str: ...

    def type(self) -> Any: ...


@runtime_checkable
class BindMounter(Protocol):
    def get_bind_options(self) -> Options: ...


@runtime_checkable
class VolumeMounter(Protocol):
    def get_volume_options(self) -> Options: ...


@runtime_checkable
class TmpfsMounter(Protocol):
    def get_tmpfs_options(self) -> Options: ...


@dataclass(frozen=True)
class DockerBindMountSource:
    """A host path bind-mounted into the container."""

    host_path: str
    bind_options: Options = None

    def source(self) -> str:
        return self.host_path

    def type(self) -> MountType:
        return MountType.BIND

    def get_bind_options(self) -> Options:
        return self.bind_options


@dataclass(frozen=True)
class DockerVolumeMountSource:
    """A named volume mounted into the container."""

    name: str
    volume_options: Options = None

    def source(self) -> str:
        return self.name

    def type(self) -> MountType:
        return MountType.VOLUME

    def get_volume_options(self) -> Options:
        return self.volume_options


@dataclass(frozen=True)
class DockerTmpfsMountSource:
    """An in-memory tmpfs mount."""

    tmpfs_options: Options = None

    def source(self) -> str:
        return ""

    def type(self) -> MountType:
        return MountType.TMPFS

    def get_tmpfs_options(self) -> Options:
        return self.tmpfs_options


@dataclass(frozen=True)
class ContainerMount:
    """A mount source attached to a target path inside the container."""

    source: MountSource
    target: str
    read_only: bool = False


def map_to_docker_mounts(mounts: Iterable[ContainerMount]) -> list[dict[str, Any]]:
    """Translate mounts into Docker Engine API mount objects, skipping unknown types."""
    result = []
    for mount in mounts:
        docker_type = _DOCKER_MOUNT_TYPES.get(mount.source.type())
        if docker_type is None:
            continue

        entry: dict[str, Any] = {
            "Type": docker_type,
            "Source": mount.source.source(),
            "Target": mount.target,
            "ReadOnly": mount.read_only,
        }

        source = mount.source
        if isinstance(source, BindMounter):
            options, key = source.get_bind_options(), "BindOptions"
        elif isinstance(source, VolumeMounter):
            options, key = source.get_volume_options(), "VolumeOptions"
        elif isinstance(source, TmpfsMounter):
            options, key = source.get_tmpfs_options(), "TmpfsOptions"
        else:
            options, key = None, ""
        if options is not None:
            entry[key] = dict(options)

        result.append(entry)
    return result