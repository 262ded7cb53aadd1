"""Wire shapes of the engine API.

Field names on the wire follow the engine's exact (case-sensitive) JSON keys.
Request bodies serialize with ``to_dict()``; optional fields that are None are
left out. Responses parse with ``from_dict()``: unknown keys are ignored and
missing required keys raise KeyError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class PortBinding:
    host_ip: str = ""
    host_port: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"HostIp": self.host_ip, "HostPort": self.host_port}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PortBinding:
        return cls(host_ip=data["HostIp"], host_port=data["HostPort"])


@dataclass
class HostConfig:
    binds: list[str] | None = None
    port_bindings: dict[str, list[PortBinding]] | None = None
    privileged: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        port_bindings = None
        if self.port_bindings is not None:
            port_bindings = {
                key: [b.to_dict() for b in bindings]
                for key, bindings in self.port_bindings.items()
            }
        return _drop_none(
            {
                "Binds": self.binds,
                "PortBindings": port_bindings,
                "Privileged": self.privileged,
            }
        )


@dataclass
class EndpointConfig:
    aliases: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"Aliases": self.aliases}


@dataclass
class NetworkingConfig:
    endpoints_config: dict[str, EndpointConfig] | None = None

    def to_dict(self) -> dict[str, Any]:
        endpoints = None
        if self.endpoints_config is not None:
            endpoints = {name: cfg.to_dict() for name, cfg in self.endpoints_config.items()}
        return _drop_none({"EndpointsConfig": endpoints})


@dataclass
class CreateContainerBody:
    """Body of POST /containers/create."""

    image: str
    exposed_ports: list[str] | None = None
    env: list[str] | None = None
    labels: dict[str, str] | None = None
    host_config: HostConfig | None = None
    networking_config: NetworkingConfig | None = None
    cmd: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        exposed = None
        if self.exposed_ports is not None:
            # The engine models a set of ports as a map to empty objects
            exposed = {port: {} for port in self.exposed_ports}
        return _drop_none(
            {
                "Image": self.image,
                "ExposedPorts": exposed,
                "Env": self.env,
                "Labels": self.labels,
                "HostConfig": self.host_config.to_dict() if self.host_config else None,
                "NetworkingConfig": (
                    self.networking_config.to_dict() if self.networking_config else None
                ),
                "Cmd": self.cmd,
            }
        )


@dataclass(frozen=True)
class ContainerCreateResponse:
    id: str
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerCreateResponse:
        return cls(id=data["Id"], warnings=data.get("Warnings") or [])


@dataclass(frozen=True)
class ContainerInspectResponse:
    """Subset of GET /containers/{id}/json.

    ``ports`` is None when the engine reports no port map at all. A port that
    is exposed but not published maps to an empty list.
    """

    ports: dict[str, list[PortBinding]] | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerInspectResponse:
        raw_ports = data["NetworkSettings"].get("Ports")
        if raw_ports is None:
            return cls(ports=None)
        return cls(
            ports={
                key: [PortBinding.from_dict(b) for b in (bindings or [])]
                for key, bindings in raw_ports.items()
            }
        )


@dataclass
class NetworkCreateBody:
    name: str
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"Name": self.name, "Labels": self.labels}


@dataclass(frozen=True)
class NetworkCreateResponse:
    id: str
    warning: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NetworkCreateResponse:
        return cls(id=data["Id"], warning=data.get("Warning") or None)


@dataclass(frozen=True)
class ImageInspectResponse:
    id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageInspectResponse:
        return cls(id=data.get("Id"))


@dataclass(frozen=True)
class ImageDeleteResponseItem:
    untagged: str | None = None
    deleted: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageDeleteResponseItem:
        return cls(untagged=data.get("Untagged"), deleted=data.get("Deleted"))


@dataclass(frozen=True)
class ManifestEntry:
    """One entry of ``manifest.json`` inside an image tarball."""

    config: str
    repo_tags: list[str]
    layers: list[str]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestEntry:
        return cls(
            config=data["Config"],
            repo_tags=data.get("RepoTags") or [],
            layers=data["Layers"],
        )


def parse_error_message(data: Any) -> str | None:
    """Extract ``message`` from an engine error body, if it has one."""
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None
