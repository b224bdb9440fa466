from __future__ import annotations

import pytest

from ktvcast.services.models import AV_TRANSPORT, RENDERING_CONTROL, RendererDevice, ServiceEndpoint

LOCATION = "http://192.168.1.20:49152/description.xml"


@pytest.fixture
def av_endpoint() -> ServiceEndpoint:
    return ServiceEndpoint(
        service_type=AV_TRANSPORT,
        control_url="/MediaRenderer/AVTransport/Control",
        service_id="urn:upnp-org:serviceId:AVTransport",
    )


@pytest.fixture
def rc_endpoint() -> ServiceEndpoint:
    return ServiceEndpoint(
        service_type=RENDERING_CONTROL,
        control_url="/MediaRenderer/RenderingControl/Control",
        service_id="urn:upnp-org:serviceId:RenderingControl",
    )


@pytest.fixture
def device(av_endpoint, rc_endpoint) -> RendererDevice:
    return RendererDevice(
        friendly_name="Living Room TV",
        location=LOCATION,
        endpoints=(av_endpoint, rc_endpoint),
    )


@pytest.fixture
def av_only_device(av_endpoint) -> RendererDevice:
    return RendererDevice(friendly_name="Projector", location=LOCATION, endpoints=(av_endpoint,))
