"""Container port names and parsing of port publishing specifications."""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable
from dataclasses import dataclass

_DEFAULT_PROTO = "tcp"
_VALID_PROTOS = frozenset({"tcp", "udp", "sctp"})
_DIGITS = re.compile(r"[0-9]+")
_MAX_PORT = 0xFFFF


def _split_proto_port(raw: str) -> tuple[str, str]:
    """Split ``"80/udp"`` into ``("udp", "80")``; the protocol defaults to tcp."""
    parts = raw.split("/")
    if not raw or not parts[0]:
        return "", ""
    if len(parts) == 1 or not parts[1]:
        return _DEFAULT_PROTO, parts[0]
    return parts[1], parts[0]


def _parse_port_number(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid port number: {text!r}")
    value = int(text)
    if value > _MAX_PORT:
        raise ValueError(f"port number out of range: {text!r}")
    return value


def _parse_port_range(text: str) -> tuple[int, int]:
    """Parse ``"80"`` or ``"8000-8010"`` into an inclusive (start, end) pair."""
    if not text:
        raise ValueError("Empty string specified for ports.")
    if "-" not in text:
        start = _parse_port_number(text)
        return start, start
    parts = text.split("-")
    start = _parse_port_number(parts[0])
    end = _parse_port_number(parts[1])
    if end < start:
        raise ValueError(f"Invalid range specified for the Port: {text}")
    return start, end


class Port(str):
    """A container port in ``number/protocol`` form, usable wherever a string is."""

    __slots__ = ()

    @classmethod
    def parse(cls, spec: str) -> Port:
        """Build a port from ``"80"`` or ``"80/udp"``, validating the number."""
        proto, number = _split_proto_port(spec)
        if not number:
            raise ValueError(f"no port specified: {spec!r}")
        _parse_port_range(number)
        return cls(f"{number}/{proto}")

    def port(self) -> str:
        """The port number (or range) part."""
        return _split_proto_port(self)[1]

    def proto(self) -> str:
        """The protocol part, tcp when none is given."""
        return _split_proto_port(self)[0]


@dataclass(frozen=True)
class PortBinding:
    """Where a container port is published on the host."""

    host_ip: str = ""
    host_port: str = ""


def _split_parts(raw: str) -> tuple[str, str, str]:
    parts = raw.split(":")
    container_port = parts[-1]
    if len(parts) == 1:
        return "", "", container_port
    if len(parts) == 2:
        return "", parts[0], container_port
    if len(parts) == 3:
        return parts[0], parts[1], container_port
    return ":".join(parts[:-2]), parts[-2], container_port


def _normalise_ip(ip: str) -> str:
    if ip.startswith("["):
        if not ip.endswith("]"):
            raise ValueError(f"Invalid ip address {ip}")
        ip = ip[1:-1]
    if ip:
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            raise ValueError(f"Invalid ip address: {ip}") from None
    return ip


def _parse_port_spec(raw: str) -> list[tuple[Port, PortBinding]]:
    ip, host_port, container_port = _split_parts(raw)
    proto, container_port = _split_proto_port(container_port)
    ip = _normalise_ip(ip)

    if not container_port:
        raise ValueError(f"No port specified: {raw}<empty>")

    try:
        start, end = _parse_port_range(container_port)
    except ValueError:
        raise ValueError(f"Invalid containerPort: {container_port}") from None

    host_start = host_end = 0
    if host_port:
        try:
            host_start, host_end = _parse_port_range(host_port)
        except ValueError:
            raise ValueError(f"Invalid hostPort: {host_port}") from None

    if host_port and (end - start) != (host_end - host_start) and end != start:
        raise ValueError(
            "Invalid ranges specified for container and host Ports: "
            f"{container_port} and {host_port}"
        )

    proto = proto.lower()
    if proto not in _VALID_PROTOS:
        raise ValueError(f"Invalid proto: {proto}")

    mappings = []
    for offset in range(end - start + 1):
        binding_port = str(host_start + offset) if host_port else host_port
        if start == end and host_start != host_end:
            binding_port = f"{binding_port}-{host_end}"
        port = Port.parse(f"{start + offset}/{proto}")
        mappings.append((port, PortBinding(host_ip=ip, host_port=binding_port)))
    return mappings


def parse_port_specs(specs: Iterable[str]) -> tuple[set[Port], dict[Port, list[PortBinding]]]:
    """Parse publishing specs such as ``"127.0.0.1:8080:80/tcp"``.

    Returns the set of exposed container ports and, for each, its host bindings.
    """
    exposed: set[Port] = set()
    bindings: dict[Port, list[PortBinding]] = {}
    for raw in specs:
        for port, binding in _parse_port_spec(raw):
            exposed.add(port)
            bindings.setdefault(port, []).append(binding)
    return exposed, bindings