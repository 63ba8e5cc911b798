"""Helpers shared by the Doh-KDVP and Doh-Div generators.

XML documents are built with ElementTree, which takes care of escaping; the
eDavki envelope (namespaces, taxpayer header, workflow) lives here so both
forms render it identically.
"""

import xml.etree.ElementTree as ET
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Tuple, Union

from .models import TaxpayerIdentity

EDP_NS = "http://edavki.durs.si/Documents/Schemas/EDP-Common-1.xsd"
SCHEMA_BASE = "http://edavki.durs.si/Documents/Schemas"
TAXPAYER_TYPE = "FO"  # natural person

ET.register_namespace("edp", EDP_NS)

COUNTRY_CODES = {
    "AUSTRALIA": "AU",
    "AUSTRIA": "AT",
    "BELGIUM": "BE",
    "BERMUDA": "BM",
    "BRAZIL": "BR",
    "CANADA": "CA",
    "CAYMAN ISLANDS": "KY",
    "CHINA": "CN",
    "CROATIA": "HR",
    "DENMARK": "DK",
    "FINLAND": "FI",
    "FRANCE": "FR",
    "GERMANY": "DE",
    "GREAT BRITAIN": "GB",
    "GUERNSEY": "GG",
    "HONG KONG": "HK",
    "INDIA": "IN",
    "IRELAND": "IE",
    "ISRAEL": "IL",
    "ITALY": "IT",
    "JAPAN": "JP",
    "JERSEY": "JE",
    "LUXEMBOURG": "LU",
    "MEXICO": "MX",
    "NETHERLANDS": "NL",
    "THE NETHERLANDS": "NL",
    "NORWAY": "NO",
    "POLAND": "PL",
    "PORTUGAL": "PT",
    "SINGAPORE": "SG",
    "SLOVENIA": "SI",
    "SOUTH KOREA": "KR",
    "SPAIN": "ES",
    "SWEDEN": "SE",
    "SWITZERLAND": "CH",
    "TAIWAN": "TW",
    "UNITED KINGDOM": "GB",
    "UK": "GB",
    "UNITED STATES": "US",
    "UNITED STATES OF AMERICA": "US",
    "USA": "US",
}


class DocumentWorkflow(str, Enum):
    """eDavki DocumentWorkflowID values."""
    ORIGINAL = "O"
    INFORMATIVE = "I"

    @classmethod
    def for_mode(cls, test_mode: bool) -> "DocumentWorkflow":
        return cls.INFORMATIVE if test_mode else cls.ORIGINAL


def format_decimal(value: Union[Decimal, int, str], places: int) -> str:
    """Fixed-point string with ``places`` decimals, rounded half up; never '-0.00'."""
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    if rounded == 0:
        rounded = abs(rounded)
    return f"{rounded:f}"


def format_date_dmy(iso_date: str) -> str:
    """'2024-03-07' -> '07.03.2024'; anything else is returned unchanged."""
    parts = (iso_date or "").split("-")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return iso_date
    year, month, day = parts
    return f"{day}.{month}.{year}"


def country_code(country: Optional[str]) -> str:
    """Map a country name to its ISO alpha-2 code; codes and unknown names pass through."""
    value = (country or "").strip()
    if len(value) == 2 and value.isalpha():
        return value.upper()
    return COUNTRY_CODES.get(value.upper(), value)


def bool_text(value: bool) -> str:
    return "true" if value else "false"


def sub(parent: ET.Element, namespace: str, tag: str, text: Optional[str] = None) -> ET.Element:
    """Append a namespaced child element, with optional text content."""
    element = ET.SubElement(parent, f"{{{namespace}}}{tag}")
    if text is not None:
        element.text = text
    return element


def form_namespace(form: str) -> str:
    """Namespace of an eDavki form schema, e.g. 'Doh_KDVP_9'."""
    return f"{SCHEMA_BASE}/{form}.xsd"


def build_envelope(
    form: str,
    taxpayer: TaxpayerIdentity,
    workflow: DocumentWorkflow,
) -> Tuple[ET.Element, ET.Element]:
    """Create the eDavki Envelope with its taxpayer header; returns (envelope, body)."""
    ns = form_namespace(form)
    envelope = ET.Element(f"{{{ns}}}Envelope")
    header = sub(envelope, EDP_NS, "Header")
    tp = sub(header, EDP_NS, "taxpayer")
    sub(tp, EDP_NS, "taxNumber", taxpayer.tax_number or "")
    sub(tp, EDP_NS, "taxpayerType", TAXPAYER_TYPE)
    sub(tp, EDP_NS, "name", taxpayer.name or "")
    sub(tp, EDP_NS, "address1", taxpayer.address or "")
    sub(tp, EDP_NS, "city", taxpayer.city or "")
    sub(tp, EDP_NS, "postNumber", taxpayer.post_number or "")
    sub(tp, EDP_NS, "postName", taxpayer.post_name or "")
    wf = sub(header, EDP_NS, "Workflow")
    sub(wf, EDP_NS, "DocumentWorkflowID", workflow.value)
    sub(envelope, EDP_NS, "AttachmentList")
    sub(envelope, EDP_NS, "Signatures")
    body = sub(envelope, ns, "body")
    return envelope, body


def serialize(envelope: ET.Element, form: str) -> str:
    """Render the document with an XML declaration, indented, form namespace as default."""
    ET.indent(envelope, space="  ")
    text = ET.tostring(envelope, encoding="unicode", default_namespace=form_namespace(form))
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + text + "\n"
