"""WebDAV request bodies and 207 Multi-Status parsing for CardDAV.

Request bodies are built with ElementTree so hrefs and tokens are escaped.
Parsing works on Clark-notation names; hrefs are returned exactly as the
server wrote them (callers resolve them against the collection URL).
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from ..errors import RemoteProtocolError

__all__ = [
    "CARDDAV",
    "DAV",
    "MultiStatus",
    "ResponseEntry",
    "addressbook_home_set_body",
    "addressbook_multiget_body",
    "addressbook_query_body",
    "list_addressbooks_body",
    "parse_multistatus",
    "principal_body",
    "sync_collection_body",
]

DAV_NS = "DAV:"
CARDDAV_NS = "urn:ietf:params:xml:ns:carddav"
DAV = "{DAV:}"
CARDDAV = "{urn:ietf:params:xml:ns:carddav}"

ET.register_namespace("d", DAV_NS)
ET.register_namespace("card", CARDDAV_NS)


# -----------------
# Request bodies
# -----------------


def _serialize(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _propfind(*props: str) -> bytes:
    root = ET.Element(f"{DAV}propfind")
    prop = ET.SubElement(root, f"{DAV}prop")
    for name in props:
        ET.SubElement(prop, name)
    return _serialize(root)


def principal_body() -> bytes:
    return _propfind(f"{DAV}current-user-principal")


def addressbook_home_set_body() -> bytes:
    return _propfind(f"{CARDDAV}addressbook-home-set")


def list_addressbooks_body() -> bytes:
    return _propfind(f"{DAV}resourcetype", f"{DAV}displayname")


def sync_collection_body(sync_token: str) -> bytes:
    root = ET.Element(f"{DAV}sync-collection")
    token_el = ET.SubElement(root, f"{DAV}sync-token")
    token_el.text = sync_token or ""
    level = ET.SubElement(root, f"{DAV}sync-level")
    level.text = "1"
    prop = ET.SubElement(root, f"{DAV}prop")
    ET.SubElement(prop, f"{DAV}getetag")
    return _serialize(root)


def addressbook_multiget_body(hrefs: list[str]) -> bytes:
    root = ET.Element(f"{CARDDAV}addressbook-multiget")
    prop = ET.SubElement(root, f"{DAV}prop")
    ET.SubElement(prop, f"{DAV}getetag")
    ET.SubElement(prop, f"{CARDDAV}address-data")
    for href in hrefs:
        el = ET.SubElement(root, f"{DAV}href")
        el.text = href
    return _serialize(root)


def addressbook_query_body() -> bytes:
    root = ET.Element(f"{CARDDAV}addressbook-query")
    prop = ET.SubElement(root, f"{DAV}prop")
    ET.SubElement(prop, f"{DAV}getetag")
    ET.SubElement(prop, f"{CARDDAV}address-data")
    return _serialize(root)


# -----------------
# Parsing
# -----------------


@dataclass
class ResponseEntry:
    href: str
    status: int | None = None
    etag: str = ""
    address_data: str = ""
    displayname: str = ""
    is_addressbook: bool = False
    principal_href: str = ""
    home_set_href: str = ""

    @property
    def ok(self) -> bool:
        return self.status is None or 200 <= self.status < 300


@dataclass
class MultiStatus:
    responses: list[ResponseEntry] = field(default_factory=list)
    sync_token: str = ""


def _status_code(text: str | None) -> int | None:
    # "HTTP/1.1 404 Not Found"
    if not text:
        return None
    parts = text.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def _text(el: ET.Element | None) -> str:
    if el is None or el.text is None:
        return ""
    return el.text.strip()


def parse_multistatus(content: bytes | str) -> MultiStatus:
    """Parse a 207 body; raises RemoteProtocolError on malformed XML."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise RemoteProtocolError(f"malformed multistatus: {exc}") from exc
    if root.tag != f"{DAV}multistatus":
        raise RemoteProtocolError(f"unexpected root element {root.tag}")

    result = MultiStatus(sync_token=_text(root.find(f"{DAV}sync-token")))
    for resp_el in root.findall(f"{DAV}response"):
        href = _text(resp_el.find(f"{DAV}href"))
        if not href:
            continue
        entry = ResponseEntry(href=href, status=_status_code(_text(resp_el.find(f"{DAV}status"))))

        for propstat in resp_el.findall(f"{DAV}propstat"):
            status = _status_code(_text(propstat.find(f"{DAV}status")))
            if status is not None and not 200 <= status < 300:
                continue
            prop = propstat.find(f"{DAV}prop")
            if prop is None:
                continue
            entry.etag = _text(prop.find(f"{DAV}getetag")) or entry.etag
            data_el = prop.find(f"{CARDDAV}address-data")
            if data_el is not None and data_el.text:
                entry.address_data = data_el.text
            entry.displayname = _text(prop.find(f"{DAV}displayname")) or entry.displayname
            rtype = prop.find(f"{DAV}resourcetype")
            if rtype is not None and rtype.find(f"{CARDDAV}addressbook") is not None:
                entry.is_addressbook = True
            principal = prop.find(f"{DAV}current-user-principal/{DAV}href")
            if principal is not None:
                entry.principal_href = _text(principal)
            home = prop.find(f"{CARDDAV}addressbook-home-set/{DAV}href")
            if home is not None:
                entry.home_set_href = _text(home)

        result.responses.append(entry)
    return result
