from __future__ import annotations

from types import MappingProxyType

from .errors import ConfigurationError

OCF_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"
NCX_NS = "http://www.daisy.org/z3986/2005/ncx/"
XHTML_NS = "http://www.w3.org/1999/xhtml"

XPATH_NAMESPACES = MappingProxyType(
    {
        "n": OCF_NS,
        "ocf": OCF_NS,
        "opf": OPF_NS,
        "dc": DC_NS,
        "ncx": NCX_NS,
        "xhtml": XHTML_NS,
    }
)


def namespace_uri(prefix: str) -> str:
    try:
        return XPATH_NAMESPACES[prefix]
    except KeyError:
        raise ConfigurationError(f"Unknown XML namespace {prefix}") from None


def split_qualified_name(name: str) -> tuple[str, str]:
    prefix, sep, local = (name or "").partition(":")
    if not sep:
        return "", prefix
    return prefix, local
