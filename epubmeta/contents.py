from __future__ import annotations

import html
from typing import Optional

from lxml import etree as LXML_ET

from .errors import NotFoundError

MARKUP_TAGS = {
    "br",
    "p",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "span",
    "div",
    "i",
    "strong",
    "b",
    "table",
    "td",
    "th",
    "tr",
}

BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "canvas",
    "dd",
    "div",
    "dl",
    "dt",
    "fieldset",
    "figcaption",
    "figure",
    "footer",
    "form",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hgroup",
    "hr",
    "li",
    "main",
    "nav",
    "noscript",
    "ol",
    "output",
    "p",
    "pre",
    "section",
    "table",
    "tfoot",
    "ul",
    "video",
}


def _local_name(node: LXML_ET._Element) -> str:
    return LXML_ET.QName(node).localname


def _is_element(node: LXML_ET._Element) -> bool:
    return isinstance(node.tag, str)


def is_block_level(tag: str) -> bool:
    return tag.lower() in BLOCK_LEVEL_TAGS


def _find_by_id(root: LXML_ET._Element, element_id: str) -> Optional[LXML_ET._Element]:
    found = root.xpath("//*[@id=$id]", id=element_id)  # noqa: S320
    return found[0] if found else None


def _starting_node(root: LXML_ET._Element, fragment_begin: Optional[str]) -> LXML_ET._Element:
    if fragment_begin:
        node = _find_by_id(root, fragment_begin)
        if node is None:
            raise NotFoundError(f"Begin of fragment not found: No element with ID {fragment_begin}!")
        return node
    body = root.xpath("//*[local-name()='body']")  # noqa: S320
    return body[0] if body else root


def extract_contents(
    root: LXML_ET._Element,
    fragment_begin: Optional[str] = None,
    fragment_end: Optional[str] = None,
    keep_markup: bool = False,
) -> str:
    """Render an XHTML tree (or the part between two IDs) as text.

    The walk runs in document order from the begin element (or ``body``) and
    keeps going past its subtree, stepping out into ancestors, until the
    element carrying ``fragment_end`` is entered. Closing markers are queued
    when an element is entered and emitted when its subtree is left: the end
    tag for allow-listed tags when ``keep_markup`` is set, a newline for other
    block-level elements, nothing otherwise. Ancestors of the begin element
    were never entered and so emit nothing when stepped out of.
    """
    node: Optional[LXML_ET._Element] = _starting_node(root, fragment_begin)
    parts: list[str] = []
    end_markers: list[str] = []

    def text(value: Optional[str]) -> None:
        if value:
            parts.append(html.escape(value) if keep_markup else value)

    while node is not None:
        if fragment_end and _is_element(node) and node.get("id") == fragment_end:
            break

        if _is_element(node):
            tag = _local_name(node)
            if keep_markup and tag in MARKUP_TAGS:
                parts.append(f"<{tag}>")
                end_markers.append(f"</{tag}>")
            elif is_block_level(tag):
                end_markers.append("\n")
            else:
                end_markers.append("")
            text(node.text)
            if len(node):
                node = node[0]
                continue

        # leave node: close it, emit its tail, then step right or out
        while node is not None:
            if _is_element(node) and end_markers:
                parts.append(end_markers.pop())
            text(node.tail)
            following = node.getnext()
            if following is not None:
                node = following
                break
            node = node.getparent()
        else:
            if fragment_end:
                raise NotFoundError(f"End of fragment not found: No element with ID {fragment_end}!")

    while end_markers:
        parts.append(end_markers.pop())
    return "".join(parts)
