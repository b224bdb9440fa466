"""Value objects shared by the renderer, playlist and orchestration services."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

AV_TRANSPORT = "urn:schemas-upnp-org:service:AVTransport:1"
RENDERING_CONTROL = "urn:schemas-upnp-org:service:RenderingControl:1"

EMPTY_LIST_HASH = "EMPTY_LIST_HASH"


def service_name(service_type: str) -> str:
    """Short service name from a service type URN.

    "urn:schemas-upnp-org:service:AVTransport:1" -> "AVTransport"
    """
    parts = service_type.split(":")
    if len(parts) >= 5 and parts[2] == "service":
        return parts[3]
    return service_type


@dataclass(frozen=True)
class ServiceEndpoint:
    """One entry of a device's serviceList."""

    service_type: str
    control_url: str
    service_id: str = ""
    # Raw descriptor text captured at discovery time (used for control path hints)
    description: str = ""

    @property
    def name(self) -> str:
        return service_name(self.service_type)


@dataclass(frozen=True)
class RendererDevice:
    """A discovered media renderer. Read-only for the whole session."""

    friendly_name: str
    location: str
    endpoints: tuple[ServiceEndpoint, ...] = ()

    @property
    def services(self) -> tuple[str, ...]:
        return tuple(e.service_type for e in self.endpoints)

    def find_service(self, service_type: str) -> ServiceEndpoint | None:
        for endpoint in self.endpoints:
            if endpoint.service_type == service_type:
                return endpoint
        return None

    def supports(self, service_type: str) -> bool:
        return self.find_service(service_type) is not None


@dataclass(frozen=True)
class ActionRequest:
    endpoint: ServiceEndpoint
    action: str
    args_xml: str


@dataclass
class ActionAttempt:
    """Diagnostic record for a single action invocation attempt."""

    url: str
    action: str
    soap_action: str
    path_kind: str  # "standard" or "fallback"
    status: int | None = None
    error: str = ""
    at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300 and not self.error

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Playback position in whole seconds. Zero means unknown."""

    current_seconds: int = 0
    total_seconds: int = 0

    @property
    def is_known(self) -> bool:
        return self.total_seconds > 0

    @property
    def remaining(self) -> int:
        return max(self.total_seconds - self.current_seconds, 0)


@dataclass(frozen=True)
class PlaylistSnapshot:
    content_hash: str = EMPTY_LIST_HASH
    current_item_id: str | None = None
    pending_item_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SongChanged:
    item_id: str
