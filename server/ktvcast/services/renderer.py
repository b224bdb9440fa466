"""Typed renderer commands (AVTransport + RenderingControl) on top of ActionTransport."""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

from .exceptions import ServiceNotSupported, TimeParseError
from .models import AV_TRANSPORT, RENDERING_CONTROL, ProgressSnapshot, RendererDevice, ServiceEndpoint
from .soap import ActionTransport
from .timeparse import is_unknown_time, parse_time_to_seconds

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_INFO = "http-get:*:video/mp4:*"

_INSTANCE = "<InstanceID>0</InstanceID>"


def build_didl_lite_metadata(
    title: str, media_url: str, protocol_info: str | None = None
) -> str:
    """Minimal DIDL-Lite item, escaped for embedding in <CurrentURIMetaData>.

    Only upnp:class and res@protocolInfo are needed by most renderers. No
    DLNA.ORG_PN profile: some renderers reject content whose profile doesn't
    match exactly.
    """
    protocol = protocol_info or DEFAULT_PROTOCOL_INFO
    didl = (
        '<DIDL-Lite xmlns="urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/" '
        'xmlns:dc="http://purl.org/dc/elements/1.1/" '
        'xmlns:upnp="urn:schemas-upnp-org:metadata-1-0/upnp/">'
        '<item id="0" parentID="-1" restricted="1">'
        f"<dc:title>{escape(title)}</dc:title>"
        "<upnp:storageMedium>UNKNOWN</upnp:storageMedium>"
        "<upnp:writeStatus>UNKNOWN</upnp:writeStatus>"
        f'<res protocolInfo="{escape(protocol)}">{escape(media_url)}</res>'
        "<upnp:class>object.item.videoItem</upnp:class>"
        "</item>"
        "</DIDL-Lite>"
    )
    # The <res> URL is escaped once inside the document, then the whole
    # document is escaped again to become text content of the argument.
    return escape(didl)


class RendererController:
    """Renderer operations. Does not retry; see services.retry."""

    def __init__(self, transport: ActionTransport | None = None):
        self.transport = transport or ActionTransport()

    async def close(self):
        await self.transport.close()

    def _service(self, device: RendererDevice, service_type: str) -> ServiceEndpoint:
        endpoint = device.find_service(service_type)
        if endpoint is None:
            raise ServiceNotSupported(device.friendly_name, service_type)
        return endpoint

    async def _av_action(self, device: RendererDevice, action: str, args_xml: str = _INSTANCE) -> dict[str, str]:
        endpoint = self._service(device, AV_TRANSPORT)
        response = await self.transport.invoke(device, endpoint, action, args_xml)
        logger.debug(f"{action} response: {response}")
        return response

    async def _rc_action(self, device: RendererDevice, action: str, args_xml: str) -> dict[str, str]:
        endpoint = self._service(device, RENDERING_CONTROL)
        response = await self.transport.invoke(device, endpoint, action, args_xml)
        logger.debug(f"{action} response: {response}")
        return response

    # ── AVTransport ──

    async def set_uri(self, device: RendererDevice, uri: str, metadata: str = "", title: str | None = None) -> None:
        """SetAVTransportURI. Empty metadata gets a generated DIDL-Lite item."""
        self._service(device, AV_TRANSPORT)
        logger.info(f"Setting media URI on {device.friendly_name}: {uri}")
        if not metadata.strip():
            metadata = build_didl_lite_metadata(title or uri, uri)
        args = (
            f"{_INSTANCE}"
            f"<CurrentURI>{escape(uri)}</CurrentURI>"
            f"<CurrentURIMetaData>{metadata}</CurrentURIMetaData>"
        )
        await self._av_action(device, "SetAVTransportURI", args)

    async def set_next_uri(self, device: RendererDevice, uri: str, metadata: str = "", title: str | None = None) -> None:
        self._service(device, AV_TRANSPORT)
        if not metadata.strip():
            metadata = build_didl_lite_metadata(title or uri, uri)
        args = (
            f"{_INSTANCE}"
            f"<NextURI>{escape(uri)}</NextURI>"
            f"<NextURIMetaData>{metadata}</NextURIMetaData>"
        )
        await self._av_action(device, "SetNextAVTransportURI", args)

    async def play(self, device: RendererDevice) -> None:
        logger.info(f"Sending Play to {device.friendly_name}")
        await self._av_action(device, "Play", f"{_INSTANCE}<Speed>1</Speed>")

    async def pause(self, device: RendererDevice) -> None:
        logger.info(f"Sending Pause to {device.friendly_name}")
        await self._av_action(device, "Pause")

    async def stop(self, device: RendererDevice) -> None:
        logger.info(f"Sending Stop to {device.friendly_name}")
        await self._av_action(device, "Stop")

    async def next(self, device: RendererDevice) -> None:
        await self._av_action(device, "Next")

    async def get_transport_info(self, device: RendererDevice) -> dict[str, str]:
        return await self._av_action(device, "GetTransportInfo")

    async def get_position_info(self, device: RendererDevice) -> dict[str, str]:
        return await self._av_action(device, "GetPositionInfo")

    async def get_media_info(self, device: RendererDevice) -> dict[str, str]:
        return await self._av_action(device, "GetMediaInfo")

    async def get_playback_state(self, device: RendererDevice) -> str:
        info = await self.get_transport_info(device)
        state = info.get("CurrentTransportState") or "UNKNOWN"
        logger.debug(f"Playback state of {device.friendly_name}: {state}")
        return state

    async def get_progress_seconds(self, device: RendererDevice) -> ProgressSnapshot:
        """Current position and track length in seconds.

        Returns ProgressSnapshot(0, 0) when the renderer doesn't know either value.

        Raises:
            TimeParseError: a value is present but in no supported format
        """
        info = await self.get_position_info(device)
        rel_time = info.get("RelTime", "")
        duration = info.get("TrackDuration")
        if duration is None:
            duration = info.get("AbsTime", "")
        logger.debug(f"Progress: RelTime={rel_time!r} TrackDuration={duration!r}")

        if is_unknown_time(rel_time) or is_unknown_time(duration):
            return ProgressSnapshot(0, 0)

        try:
            total = parse_time_to_seconds(duration)
            current = parse_time_to_seconds(rel_time)
        except TimeParseError as e:
            logger.warning(f"Unparseable position from {device.friendly_name}: {e}")
            raise
        return ProgressSnapshot(current_seconds=current, total_seconds=total)

    # ── RenderingControl ──

    async def set_volume(self, device: RendererDevice, volume: int) -> None:
        volume = max(0, min(int(volume), 100))
        logger.info(f"Setting volume on {device.friendly_name} to {volume}")
        args = f"{_INSTANCE}<Channel>Master</Channel><DesiredVolume>{volume}</DesiredVolume>"
        await self._rc_action(device, "SetVolume", args)

    async def get_volume(self, device: RendererDevice) -> int:
        response = await self._rc_action(device, "GetVolume", f"{_INSTANCE}<Channel>Master</Channel>")
        try:
            return int(response.get("CurrentVolume", "0"))
        except (TypeError, ValueError):
            return 0
