from __future__ import annotations

import html
from html.entities import html5 as HTML5_ENTITIES
import re
from typing import Optional

from lxml import etree as LXML_ET

from .errors import StructureError
from .namespaces import XPATH_NAMESPACES, namespace_uri, split_qualified_name

XML_BUILTIN_ENTITIES = {b"amp", b"lt", b"gt", b"quot", b"apos"}
NAMED_ENTITY_RE = re.compile(rb"&([A-Za-z][A-Za-z0-9]*);")


class EpubElement(LXML_ET.ElementBase):
    """lxml element that understands the EPUB namespace prefixes.

    Qualified names use the ``prefix:local`` form. Attributes whose namespace
    is already the element's own namespace (or the default namespace in scope
    of an element without namespace) are addressed without namespace, the way
    EPUB readers and the package XPath queries expect them.
    """

    def _attribute_key(self, name: str) -> str:
        prefix, local = split_qualified_name(name)
        if not prefix:
            return local
        uri = namespace_uri(prefix)
        own = LXML_ET.QName(self).namespace
        if own == uri or (not own and self.nsmap.get(None) == uri):
            return local
        return f"{{{uri}}}{local}"

    def get_attrib(self, name: str) -> str:
        return self.get(self._attribute_key(name)) or ""

    def set_attrib(self, name: str, value: str) -> None:
        self.set(self._attribute_key(name), value)

    def remove_attrib(self, name: str) -> None:
        self.attrib.pop(self._attribute_key(name), None)

    def new_child(self, name: str, value: str = "") -> "EpubElement":
        prefix, local = split_qualified_name(name)
        nsmap: Optional[dict[str, str]] = None
        if prefix:
            uri = namespace_uri(prefix)
            tag = f"{{{uri}}}{local}"
            # Declare the prefix only when nothing in scope maps to the URI yet.
            if uri not in self.nsmap.values():
                nsmap = {prefix: uri}
        else:
            tag = local
        child = LXML_ET.SubElement(self, tag, nsmap=nsmap)
        if value:
            child.text = value
        return child

    @property
    def unescaped_text(self) -> str:
        return "".join(self.itertext())

    @unescaped_text.setter
    def unescaped_text(self, value: str) -> None:
        for child in list(self):
            self.remove(child)
        self.text = value or None

    @property
    def escaped_text(self) -> str:
        return html.escape(self.unescaped_text, quote=False)

    def delete(self) -> None:
        parent = self.getparent()
        if parent is None:
            return
        if self.tail:
            previous = self.getprevious()
            if previous is not None:
                previous.tail = (previous.tail or "") + self.tail
            else:
                parent.text = (parent.text or "") + self.tail
        parent.remove(self)


def _epub_parser() -> LXML_ET.XMLParser:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=True)
    parser.set_element_class_lookup(LXML_ET.ElementDefaultClassLookup(element=EpubElement))
    return parser


def _parse(raw: bytes, parser: LXML_ET.XMLParser, name: str) -> LXML_ET._Element:
    try:
        root = LXML_ET.fromstring(raw, parser=parser)
    except LXML_ET.XMLSyntaxError as exc:
        raise StructureError(f"Failed to parse XML document: {name}") from exc
    if root is None:
        raise StructureError(f"Failed to parse XML document: {name}")
    return root


def xml_root_from_bytes(raw: bytes, name: str = "") -> EpubElement:
    return _parse(raw, _epub_parser(), name)


def convert_named_entities_to_numeric(raw: bytes) -> bytes:
    def replace(match: re.Match) -> bytes:
        name = match.group(1)
        if name in XML_BUILTIN_ENTITIES:
            return match.group(0)
        chars = HTML5_ENTITIES.get(name.decode("ascii") + ";")
        if chars is None:
            return match.group(0)
        return "".join(f"&#{ord(char)};" for char in chars).encode("ascii")

    return NAMED_ENTITY_RE.sub(replace, raw)


def xhtml_root_from_bytes(raw: bytes, name: str = "") -> LXML_ET._Element:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=True)
    return _parse(convert_named_entities_to_numeric(raw), parser, name)


def serialize(root: LXML_ET._Element) -> bytes:
    return LXML_ET.tostring(root.getroottree(), xml_declaration=True, encoding="utf-8")


def reparse(root: EpubElement) -> EpubElement:
    """Round-trip the whole document so later queries never see a half-edited tree."""
    return xml_root_from_bytes(serialize(root))


def xpath(node: LXML_ET._Element, expression: str, **variables: object) -> list:
    return node.xpath(expression, namespaces=dict(XPATH_NAMESPACES), **variables)  # noqa: S320


def first(node: LXML_ET._Element, expression: str, **variables: object) -> Optional[EpubElement]:
    found = xpath(node, expression, **variables)
    return found[0] if found else None
