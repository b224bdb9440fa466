"""Build a RendererDevice from a UPnP device description URL.

SSDP discovery happens elsewhere; this covers the "I already know the
description URL" path, e.g. a device configured by hand.
"""

from __future__ import annotations

import logging
import re
from xml.etree import ElementTree

import httpx

from .exceptions import ConfigurationError, TransportError
from .models import AV_TRANSPORT, RendererDevice, ServiceEndpoint

logger = logging.getLogger(__name__)

_NS = {"d": "urn:schemas-upnp-org:device-1-0"}
_SERVICE_BLOCK = re.compile(r"<service>.*?</service>", re.DOTALL | re.IGNORECASE)
_SERVICE_TYPE = re.compile(r"<serviceType>\s*([^<]+?)\s*</serviceType>", re.IGNORECASE)


def _text(el: ElementTree.Element, path: str) -> str:
    found = el.find(path, _NS)
    return found.text.strip() if found is not None and found.text else ""


def parse_description(location: str, xml_text: str) -> RendererDevice:
    """Parse a device description document.

    Services of embedded devices are included; the friendly name is taken from
    the (first) device that offers AVTransport, else the root device.
    A UPnP 1.0 <URLBase>, when present, replaces ``location`` as the base that
    relative control URLs resolve against.

    Raises:
        ConfigurationError: the document isn't a UPnP device description
    """
    try:
        root = ElementTree.fromstring(xml_text)
    except ElementTree.ParseError as e:
        raise ConfigurationError(f"Invalid device description at {location}: {e}") from e

    root_device = root.find("d:device", _NS)
    if root_device is None:
        raise ConfigurationError(f"No <device> in description at {location}")

    raw_blocks: dict[str, str] = {}
    for block in _SERVICE_BLOCK.findall(xml_text):
        match = _SERVICE_TYPE.search(block)
        if match:
            raw_blocks.setdefault(match.group(1), block)

    url_base = _text(root, "d:URLBase")
    if url_base.startswith(("http://", "https://")):
        logger.debug(f"Description at {location} sets URLBase {url_base}")
        base = url_base
    else:
        base = location

    friendly_name = _text(root_device, "d:friendlyName")
    endpoints: list[ServiceEndpoint] = []
    for device in root_device.iter(f"{{{_NS['d']}}}device"):
        for service in device.findall("d:serviceList/d:service", _NS):
            service_type = _text(service, "d:serviceType")
            if not service_type:
                continue
            if service_type == AV_TRANSPORT and device is not root_device:
                friendly_name = _text(device, "d:friendlyName") or friendly_name
            endpoints.append(
                ServiceEndpoint(
                    service_type=service_type,
                    control_url=_text(service, "d:controlURL"),
                    service_id=_text(service, "d:serviceId"),
                    description=raw_blocks.get(service_type, ""),
                )
            )

    return RendererDevice(
        friendly_name=friendly_name or location,
        location=base,
        endpoints=tuple(endpoints),
    )


async def describe_renderer(
    location: str, client: httpx.AsyncClient | None = None, timeout: float = 10
) -> RendererDevice:
    """Fetch and parse the description document at ``location``."""
    own_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, trust_env=False)
    try:
        response = await client.get(location)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise TransportError(f"Failed to fetch device description {location}: {e}") from e
    finally:
        if own_client:
            await client.aclose()

    device = parse_description(location, response.text)
    logger.info(f"Found renderer: {device.friendly_name} ({location})")
    logger.debug(f"Services: {device.services}")
    return device
