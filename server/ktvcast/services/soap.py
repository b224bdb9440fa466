"""UPnP action transport with control path fallback.

Renderers advertise their controlURL inconsistently: a missing leading slash
(``_urn:schemas-upnp-org:service:AVTransport_control``), Windows UPnP host proxy
paths, or a path relative to a description document that lives in a
subdirectory. The standard invocation resolves the advertised controlURL
against the device location exactly as the description says. If that fails we
rebuild the request ourselves against a list of candidate paths on the same
host and stop at the first 200.

Every attempt is logged (URL, action, SOAPAction) and kept in ``attempts`` so a
refusing device can be compared against a packet capture.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from urllib.parse import urljoin, urlsplit
from xml.etree import ElementTree
from xml.sax.saxutils import unescape

import httpx

from .exceptions import InvalidLocation, ProtocolExhausted, SoapFault, TransportError
from .models import ActionAttempt, ActionRequest, RendererDevice, ServiceEndpoint

logger = logging.getLogger(__name__)

# Fields the fallback path extracts from raw response bodies
KNOWN_FIELDS = (
    "Track",
    "TrackDuration",
    "TrackMetaData",
    "TrackURI",
    "RelTime",
    "AbsTime",
    "RelCount",
    "AbsCount",
    "CurrentTransportState",
    "CurrentTransportStatus",
    "CurrentSpeed",
    "NrTracks",
    "MediaDuration",
    "CurrentURI",
    "CurrentURIMetaData",
    "CurrentVolume",
)

CONTENT_TYPE = 'text/xml; charset="utf-8"'
USER_AGENT = "ktvcast/0.1 UPnP/1.0"

_CONTROL_URL_HINT = re.compile(r"<controlURL>\s*([^<]+?)\s*</controlURL>", re.IGNORECASE)
_UPNPHOST_HINT = re.compile(r"/upnphost/udhisapi\.dll\?control=[^\s<>\"',]+")


def soap_action_header(service: str, action: str) -> str:
    """SOAPAction header value, quotes included."""
    return f'"urn:schemas-upnp-org:service:{service}:1#{action}"'


def build_soap_envelope(service: str, action: str, args_xml: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        "<s:Body>"
        f'<u:{action} xmlns:u="urn:schemas-upnp-org:service:{service}:1">'
        f"{args_xml}"
        f"</u:{action}>"
        "</s:Body>"
        "</s:Envelope>"
    )


def scan_tags(text: str, tags: tuple[str, ...] | list[str] = KNOWN_FIELDS) -> dict[str, str]:
    """Best-effort tag scan over a response body.

    Looks for literal ``<Tag>``/``</Tag>`` pairs (or a self-closing ``<Tag/>``)
    without parsing the document. This tolerates non-conforming vendor XML that a
    strict parser rejects, so keep it textual.
    """
    out: dict[str, str] = {}
    for tag in tags:
        start_tag = f"<{tag}>"
        start = text.find(start_tag)
        if start != -1:
            value_start = start + len(start_tag)
            end = text.find(f"</{tag}>", value_start)
            if end != -1:
                out[tag] = unescape(text[value_start:end].strip())
                continue
        if f"<{tag}/>" in text or f"<{tag} />" in text:
            out[tag] = ""
    return out


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_soap_response(text: str, action: str) -> dict[str, str]:
    """Strictly parse a SOAP response into {argument: value}.

    Raises:
        SoapFault: the body is a SOAP fault
        TransportError: malformed XML or missing Body
    """
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as e:
        raise TransportError(f"{action}: malformed response body: {e}") from e

    body = next((el for el in root if _local_name(el.tag) == "Body"), None)
    if body is None or len(body) == 0:
        raise TransportError(f"{action}: response has no SOAP body")

    response = body[0]
    if _local_name(response.tag) == "Fault":
        raise SoapFault(action, _describe_fault(response))

    return {_local_name(child.tag): (child.text or "").strip() for child in response}


def _describe_fault(fault: ElementTree.Element) -> str:
    found = {}
    for el in fault.iter():
        name = _local_name(el.tag)
        if name in ("faultstring", "errorCode", "errorDescription") and el.text:
            found[name] = el.text.strip()
    if "errorCode" in found:
        return f"UPnP error {found['errorCode']} {found.get('errorDescription', '')}".strip()
    return found.get("faultstring", "unknown fault")


def normalize_control_path(path: str) -> str:
    """Prefix a slash unless the path already has one or is an absolute URL."""
    p = path.strip()
    if p.startswith("http://") or p.startswith("https://"):
        return p
    if p.startswith("/"):
        return p
    return f"/{p}"


def location_origin(location: str) -> str:
    """scheme://host:port of a device location.

    Raises:
        InvalidLocation: location has no scheme or host
    """
    parts = urlsplit(location)
    if not parts.scheme or not parts.hostname:
        raise InvalidLocation(location)
    try:
        port = parts.port
    except ValueError as e:
        raise InvalidLocation(location, f"bad port: {e}") from e
    if port is None:
        port = 443 if parts.scheme == "https" else 80
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    return f"{parts.scheme}://{host}:{port}"


def candidate_control_paths(endpoint: ServiceEndpoint) -> list[str]:
    """Ordered, deduplicated fallback control paths for a service."""
    service = endpoint.name
    descriptor = endpoint.description or f"<controlURL>{endpoint.control_url}</controlURL>"

    hints: list[str] = []
    match = _CONTROL_URL_HINT.search(descriptor)
    if match:
        hints.append(unescape(match.group(1)))
    match = _UPNPHOST_HINT.search(descriptor)
    if match:
        hints.append(unescape(match.group(0)))

    generic = [
        f"_urn:schemas-upnp-org:service:{service}_control",
        f"{service}/control",
        f"upnp/control/{service}",
        f"control/{service}",
    ]

    paths: list[str] = []
    for raw in hints + generic:
        if not raw.strip():
            continue
        path = normalize_control_path(raw)
        if path not in paths:
            paths.append(path)
    return paths


class ActionTransport:
    """Delivers UPnP actions to a renderer service."""

    def __init__(
        self,
        timeout: float = 10,
        client: httpx.AsyncClient | None = None,
        max_attempts_kept: int = 200,
    ):
        self.timeout = timeout
        self._client = client
        self.attempts: deque[ActionAttempt] = deque(maxlen=max_attempts_kept)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # trust_env=False: renderers live on the LAN, never go through a proxy
            self._client = httpx.AsyncClient(timeout=self.timeout, trust_env=False)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def invoke(
        self,
        device: RendererDevice,
        endpoint: ServiceEndpoint,
        action: str,
        args_xml: str,
    ) -> dict[str, str]:
        """Invoke an action, falling back to alternate control paths on failure.

        Returns:
            Response fields by name. Never assumed complete.

        Raises:
            InvalidLocation: the device location can't be parsed
            ProtocolExhausted: the standard path and all fallbacks failed
        """
        request = ActionRequest(endpoint=endpoint, action=action, args_xml=args_xml)
        origin = location_origin(device.location)
        standard_url = urljoin(device.location, endpoint.control_url)

        try:
            response = await self._invoke_standard(standard_url, request)
            logger.info(f"UPnP {action} (standard) succeeded on {device.friendly_name}")
            logger.debug(f"UPnP {action} (standard) response: {response}")
            return response
        except TransportError as e:
            logger.warning(f"UPnP {action} (standard) failed: {e}, trying compatibility paths")

        return await self._invoke_fallback(origin, request, tried=standard_url)

    async def _post(self, url: str, request: ActionRequest, path_kind: str) -> httpx.Response:
        service = request.endpoint.name
        header = soap_action_header(service, request.action)
        body = build_soap_envelope(service, request.action, request.args_xml)
        attempt = ActionAttempt(
            url=url, action=request.action, soap_action=header, path_kind=path_kind
        )
        self.attempts.append(attempt)

        logger.info(f"UPnP Action ({path_kind}) -> url={url} SOAPAction={header}")
        logger.debug(f"UPnP Action ({path_kind}) body => {body}")

        client = await self._get_client()
        try:
            response = await client.post(
                url,
                content=body.encode("utf-8"),
                headers={
                    "SOAPAction": header,
                    "Content-Type": CONTENT_TYPE,
                    "User-Agent": USER_AGENT,
                },
            )
        except httpx.HTTPError as e:
            attempt.error = str(e) or type(e).__name__
            raise TransportError(f"{request.action} request to {url} failed: {attempt.error}") from e

        attempt.status = response.status_code
        return response

    async def _invoke_standard(self, url: str, request: ActionRequest) -> dict[str, str]:
        response = await self._post(url, request, "standard")
        if not response.is_success:
            detail = _short(response.text)
            self.attempts[-1].error = f"HTTP {response.status_code}"
            raise TransportError(
                f"{request.action} returned HTTP {response.status_code}: {detail}"
            )
        try:
            return parse_soap_response(response.text, request.action)
        except SoapFault as e:
            self.attempts[-1].error = str(e)
            raise
        except TransportError as e:
            # The action was accepted; sending it again elsewhere could run it twice
            self.attempts[-1].error = str(e)
            logger.warning(
                f"UPnP {request.action} (standard): HTTP {response.status_code} "
                f"with a non-SOAP body ({e}), scanning it for known fields"
            )
            return scan_tags(response.text)

    async def _invoke_fallback(self, origin: str, request: ActionRequest, tried: str = "") -> dict[str, str]:
        """Try each candidate control path; the standard URL (``tried``) is not posted again."""
        urls = []
        for path in candidate_control_paths(request.endpoint):
            url = path if path.startswith(("http://", "https://")) else f"{origin}{path}"
            if url != tried and url not in urls:
                urls.append(url)
        last_error = ""

        for url in urls:
            try:
                response = await self._post(url, request, "fallback")
            except TransportError as e:
                logger.warning(f"UPnP {request.action} (fallback) failed with path {url}: {e}")
                last_error = str(e)
                continue

            if response.status_code == 200:
                logger.info(f"UPnP {request.action} (fallback) succeeded with path: {url}")
                fields = scan_tags(response.text)
                logger.debug(f"UPnP {request.action} (fallback) fields: {fields}")
                return fields

            self.attempts[-1].error = f"HTTP {response.status_code}"
            last_error = f"HTTP {response.status_code}"
            logger.warning(
                f"UPnP {request.action} (fallback) failed with path {url}: "
                f"status={response.status_code} body={_short(response.text)}"
            )

        logger.error(f"UPnP {request.action}: all {len(urls) + 1} control paths failed")
        raise ProtocolExhausted(request.action, len(urls) + 1, last_error)

    def recent_attempts(self, limit: int = 20) -> list[dict]:
        return [a.to_dict() for a in list(self.attempts)[-limit:]]


def _short(text: str, limit: int = 300) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[:limit] + "..."
