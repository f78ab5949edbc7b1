"""Local contact <-> vCard mapping.

Key rules
- Only a subset travels: VERSION, UID, N, FN, NICKNAME, TITLE (read only),
  TEL (VOICE), EMAIL (INTERNET), ADR (street/city/region/postal/country).
- Export writes vCard 3.0, the version every CardDAV server accepts.
- Name decoding prefers the structured N property, falls back to FN as the
  given name, otherwise empty.
- Do not log card content; callers log remote paths only.

Public API
- CardData / PostalAddress: the mapped subset
- contact_to_vcard(data: CardData, *, uid: str) -> str
- parse_vcard(text: str) -> CardData
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import vobject
from vobject.base import VObjectError

from ..errors import InvalidVCard

__all__ = ["CardData", "PostalAddress", "contact_to_vcard", "full_name", "parse_vcard"]


@dataclass(frozen=True)
class PostalAddress:
    street: str = ""
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = ""

    def is_empty(self) -> bool:
        return not (self.street or self.city or self.region or self.postal_code or self.country)


@dataclass
class CardData:
    first_name: str = ""
    last_name: str = ""
    nickname: str = ""
    job_position: str = ""
    uid: str = ""
    phones: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    addresses: list[PostalAddress] = field(default_factory=list)


def full_name(first_name: str, last_name: str) -> str:
    return " ".join(p for p in (first_name, last_name) if p)


# -----------------
# Export
# -----------------


def contact_to_vcard(data: CardData, *, uid: str) -> str:
    """Map a local contact to vCard 3.0 text."""
    v = vobject.vCard()
    v.add("version").value = "3.0"
    v.add("uid").value = uid
    v.add("fn").value = full_name(data.first_name, data.last_name) or data.nickname
    v.add("n").value = vobject.vcard.Name(family=data.last_name, given=data.first_name)

    if data.nickname:
        v.add("nickname").value = data.nickname

    for phone in data.phones:
        prop = v.add("tel")
        prop.value = phone
        prop.type_param = "VOICE"

    for email in data.emails:
        prop = v.add("email")
        prop.value = email
        prop.type_param = "INTERNET"

    for adr in data.addresses:
        v.add("adr").value = vobject.vcard.Address(
            street=adr.street,
            city=adr.city,
            region=adr.region,
            code=adr.postal_code,
            country=adr.country,
        )

    return str(v.serialize())


# -----------------
# Import
# -----------------


def _flat(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list | tuple):
        return " ".join(str(x) for x in value if x).strip()
    return str(value).strip()


def _values(card: Any, name: str) -> list[Any]:
    return [line.value for line in card.contents.get(name, [])]


def _first_value(card: Any, name: str) -> str:
    for value in _values(card, name):
        text = _flat(value)
        if text:
            return text
    return ""


def _split_structured(value: str, size: int) -> list[str]:
    parts = [p.strip() for p in value.split(";")]
    return (parts + [""] * size)[:size]


def _name(card: Any) -> tuple[str, str]:
    for value in _values(card, "n"):
        if isinstance(value, str):
            family, given = _split_structured(value, 2)
        else:
            family, given = _flat(value.family), _flat(value.given)
        if given or family:
            return given, family
    fn = _first_value(card, "fn")
    if fn:
        return fn, ""
    return "", ""


def _addresses(values: Iterable[Any]) -> list[PostalAddress]:
    out: list[PostalAddress] = []
    for value in values:
        if isinstance(value, str):
            _box, _ext, street, city, region, code, country = _split_structured(value, 7)
        else:
            street, city, region = _flat(value.street), _flat(value.city), _flat(value.region)
            code, country = _flat(value.code), _flat(value.country)
        adr = PostalAddress(street=street, city=city, region=region, postal_code=code, country=country)
        if not adr.is_empty():
            out.append(adr)
    return out


def parse_vcard(text: str) -> CardData:
    """Parse vCard text into the mapped subset; raises InvalidVCard."""
    if not text or not text.strip():
        raise InvalidVCard("empty vCard data")
    try:
        card = vobject.readOne(text)
    except (VObjectError, ValueError, StopIteration) as exc:
        raise InvalidVCard(f"cannot parse vCard: {exc}") from exc
    if card.name.upper() != "VCARD":
        raise InvalidVCard(f"expected VCARD component, got {card.name}")

    first, last = _name(card)
    return CardData(
        first_name=first,
        last_name=last,
        nickname=_first_value(card, "nickname"),
        job_position=_first_value(card, "title"),
        uid=_first_value(card, "uid"),
        phones=[p for p in (_flat(v) for v in _values(card, "tel")) if p],
        emails=[e for e in (_flat(v) for v in _values(card, "email")) if e],
        addresses=_addresses(_values(card, "adr")),
    )
