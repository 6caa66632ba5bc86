from __future__ import annotations

from collections.abc import Mapping, Sequence
from functools import lru_cache
import logging
import os
import posixpath
from pathlib import Path
from string import ascii_lowercase, ascii_uppercase
from typing import Optional, Union
from urllib.parse import unquote

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .archive import ArchiveMembers, ArchivePayload, canonical_member, open_archive, resolve_href, rewrite_archive
from .dom import EpubElement, first, reparse, serialize, xml_root_from_bytes, xpath
from .env import templates_dir
from .errors import InvalidInputError, StructureError
from .models import XHTML_MEDIA_TYPE, Manifest, NavPoint, NavPointList, Spine, Toc
from .namespaces import namespace_uri, split_qualified_name

logger = logging.getLogger("epubmeta.epub")

CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_MEDIA_TYPE = "application/oebps-package+xml"
DEFAULT_UNIQUE_IDENTIFIER_ID = "BookId"

# Manifest ids (and member names) owned by this library.
COVER_ID = "epubmeta-cover"
TITLE_PAGE_ID = "epubmeta-titlepage"
TITLE_PAGE_TEMPLATE = "titlepage.xhtml.j2"

UUID_SCHEMES = ("UUID", "URN")

AttributeValues = Union[str, Sequence[str], None]


@lru_cache(maxsize=4)
def _epub_template_env(directory: str) -> Environment:
    return Environment(
        loader=FileSystemLoader(directory),
        autoescape=select_autoescape(
            enabled_extensions=("xml", "xhtml", "html", "j2"),
            default_for_string=True,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _render_title_page(template: Optional[str], **context: object) -> str:
    env = _epub_template_env(str(templates_dir()))
    compiled = env.from_string(template) if template else env.get_template(TITLE_PAGE_TEMPLATE)
    return compiled.render(**context)


def _as_values(values: AttributeValues) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return list(values)


def _split_list(value: str) -> list[str]:
    if value == "":
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _iter_children_by_local_name(node: EpubElement, local_name: str) -> list[EpubElement]:
    return xpath(node, "*[local-name()=$name]", name=local_name)


def _xpath_attribute(element: str, attribute: str) -> str:
    # Same rule as EpubElement: an attribute in the element's own namespace is unqualified.
    element_prefix, _ = split_qualified_name(element)
    attribute_prefix, attribute_local = split_qualified_name(attribute)
    if element_prefix and attribute_prefix and namespace_uri(element_prefix) == namespace_uri(attribute_prefix):
        return attribute_local
    if attribute_prefix:
        namespace_uri(attribute_prefix)
    return attribute


def _play_order(raw: str) -> int:
    try:
        return int(raw.strip())
    except (AttributeError, ValueError):
        return 0


class Epub:
    """An EPUB file opened for reading and metadata editing.

    The package document is kept as a parsed lxml tree. Every mutation is
    followed by a resync (serialize + reparse) which also drops the cached
    Manifest, Spine and Toc, so no query ever observes a half-applied edit.
    Nothing is written to disk before ``save()``.
    """

    def __init__(self, filename: Union[str, Path]) -> None:
        self.filename = Path(filename)
        self._archive = ArchiveMembers(open_archive(self.filename))
        self._staged: dict[str, ArchivePayload] = {}
        self._deleted: set[str] = set()
        self._manifest: Optional[Manifest] = None
        self._spine: Optional[Spine] = None
        self._toc: Optional[Toc] = None
        try:
            self._opf_path = self._find_package_path()
            self._opf = self._load_xml(self._opf_path)
        except Exception:
            self._archive.close()
            raise
        logger.debug("loaded %s (package document %s)", self.filename, self._opf_path)

    def __enter__(self) -> "Epub":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._archive.close()

    def get_filename(self) -> Path:
        return self.filename

    # -- loading ---------------------------------------------------------

    def _read_member(self, member_path: str) -> Optional[bytes]:
        member = canonical_member(member_path)
        if member in self._deleted:
            return None
        staged = self._staged.get(member)
        if staged is not None:
            return staged.read_bytes() if isinstance(staged, Path) else staged
        return self._archive.read(member)

    def _member_size(self, member_path: str) -> int:
        member = canonical_member(member_path)
        if member in self._deleted:
            return 0
        staged = self._staged.get(member)
        if staged is not None:
            return staged.stat().st_size if isinstance(staged, Path) else len(staged)
        return self._archive.size(member)

    def _load_xml(self, member_path: str) -> EpubElement:
        raw = self._read_member(member_path)
        if not raw:
            raise StructureError(f"Failed to read from EPUB container: {member_path}")
        return xml_root_from_bytes(raw, member_path)

    def _find_package_path(self) -> str:
        container = self._load_xml(CONTAINER_PATH)
        rootfile = first(container, "//ocf:rootfiles/ocf:rootfile[@media-type=$media_type]", media_type=PACKAGE_MEDIA_TYPE)
        if rootfile is None:
            rootfile = first(container, "//*[local-name()='rootfile'][@full-path]")
            if rootfile is not None:
                logger.warning("%s: no package rootfile with media type %s, using first rootfile", self.filename, PACKAGE_MEDIA_TYPE)
        full_path = canonical_member(rootfile.get_attrib("full-path")) if rootfile is not None else ""
        if not full_path:
            raise StructureError(f"No package document declared in {CONTAINER_PATH}")
        return full_path

    def _opf_member(self, href: str) -> str:
        return resolve_href(self._opf_path, unquote(href))

    def _sync(self) -> None:
        self._opf = reparse(self._opf)
        self._manifest = None
        self._spine = None
        self._toc = None
        logger.debug("resynced package document of %s", self.filename)

    def _stage(self, member_path: str, payload: ArchivePayload) -> None:
        member = canonical_member(member_path)
        self._deleted.discard(member)
        self._staged[member] = payload

    def _stage_deletion(self, member_path: str) -> None:
        member = canonical_member(member_path)
        self._staged.pop(member, None)
        if member in self._archive:
            self._deleted.add(member)

    # -- saving ----------------------------------------------------------

    def save(self) -> None:
        """Write the package document and all staged members back to the file."""
        writes: dict[str, ArchivePayload] = dict(self._staged)
        writes[self._opf_path] = serialize(self._opf)
        self._archive.close()
        try:
            rewrite_archive(self.filename, writes, set(self._deleted))
        finally:
            self._archive = ArchiveMembers(open_archive(self.filename))
        self._staged.clear()
        self._deleted.clear()
        self._sync()

    # -- generic metadata access -------------------------------------------

    def _metadata_node(self) -> EpubElement:
        node = first(self._opf, "//opf:metadata")
        if node is None:
            raise StructureError("No metadata element found in package document!")
        return node

    def _meta_query(
        self,
        element: str,
        attribute: Optional[str] = None,
        values: AttributeValues = None,
        case_insensitive: bool = False,
    ) -> list[EpubElement]:
        element_prefix, _ = split_qualified_name(element)
        if element_prefix:
            namespace_uri(element_prefix)
        expression = f"//opf:metadata/{element}"
        variables: dict[str, str] = {}
        if attribute:
            attr = _xpath_attribute(element, attribute)
            conditions: list[str] = []
            for index, value in enumerate(_as_values(values)):
                key = f"v{index}"
                variables[key] = value
                if case_insensitive:
                    conditions.append(f"translate(@{attr}, $upper, $lower)=translate(${key}, $upper, $lower)")
                else:
                    conditions.append(f"@{attr}=${key}")
            if case_insensitive:
                variables["upper"] = ascii_uppercase
                variables["lower"] = ascii_lowercase
            expression += f"[{' or '.join(conditions) or '@' + attr}]"
        return xpath(self._opf, expression, **variables)

    def _get_meta(
        self,
        element: str,
        attribute: Optional[str] = None,
        values: AttributeValues = None,
        case_insensitive: bool = False,
    ) -> str:
        nodes = self._meta_query(element, attribute, values, case_insensitive)
        return nodes[0].unescaped_text if nodes else ""

    def _set_meta(
        self,
        element: str,
        value: str,
        attribute: Optional[str] = None,
        values: AttributeValues = None,
        case_insensitive: bool = False,
    ) -> None:
        """Set a metadata element expected to be unique; ``""`` deletes it."""
        nodes = self._meta_query(element, attribute, values, case_insensitive)
        if len(nodes) == 1:
            if value == "":
                nodes[0].delete()
            else:
                nodes[0].unescaped_text = value
        else:
            # zero or several matches: replace them all with a single node
            for node in nodes:
                node.delete()
            if value:
                node = self._metadata_node().new_child(element, value)
                attribute_values = _as_values(values)
                if attribute and attribute_values:
                    node.set_attrib(attribute, attribute_values[0])
        self._sync()

    # -- simple fields ---------------------------------------------------

    def get_title(self) -> str:
        return self._get_meta("dc:title")

    def set_title(self, title: str) -> None:
        self._set_meta("dc:title", title)

    def get_language(self) -> str:
        return self._get_meta("dc:language")

    def set_language(self, language: str) -> None:
        self._set_meta("dc:language", language)

    def get_publisher(self) -> str:
        return self._get_meta("dc:publisher")

    def set_publisher(self, publisher: str) -> None:
        self._set_meta("dc:publisher", publisher)

    def get_copyright(self) -> str:
        return self._get_meta("dc:rights")

    def set_copyright(self, rights: str) -> None:
        self._set_meta("dc:rights", rights)

    def get_description(self) -> str:
        return self._get_meta("dc:description")

    def set_description(self, description: str) -> None:
        self._set_meta("dc:description", description)

    # -- identifiers -----------------------------------------------------

    def get_unique_identifier(self) -> str:
        identifier_id = self._opf.get("unique-identifier")
        if not identifier_id:
            return ""
        return self._get_meta("dc:identifier", "id", identifier_id)

    def set_unique_identifier(self, value: str) -> None:
        identifier_id = self._opf.get("unique-identifier")
        if not identifier_id:
            if not value:
                return
            identifier_id = DEFAULT_UNIQUE_IDENTIFIER_ID
            self._opf.set("unique-identifier", identifier_id)
        self._set_meta("dc:identifier", value, "id", identifier_id)

    def get_identifier(self, scheme: Union[str, Sequence[str]]) -> str:
        """Value of the ``dc:identifier`` with the given scheme (or any alias of it)."""
        return self._get_meta("dc:identifier", "opf:scheme", scheme, case_insensitive=True)

    def set_identifier(self, scheme: Union[str, Sequence[str]], value: str) -> None:
        self._set_meta("dc:identifier", value, "opf:scheme", scheme, case_insensitive=True)

    def get_uuid(self) -> str:
        return self.get_identifier(UUID_SCHEMES)

    def set_uuid(self, uuid: str) -> None:
        self.set_identifier(UUID_SCHEMES, uuid)

    def get_uri(self) -> str:
        return self.get_identifier("URI")

    def set_uri(self, uri: str) -> None:
        self.set_identifier("URI", uri)

    def get_isbn(self) -> str:
        return self.get_identifier("ISBN")

    def set_isbn(self, isbn: str) -> None:
        self.set_identifier("ISBN", isbn)

    def get_google(self) -> str:
        return self.get_identifier("GOOGLE")

    def set_google(self, google: str) -> None:
        self.set_identifier("GOOGLE", google)

    def get_amazon(self) -> str:
        return self.get_identifier("AMAZON")

    def set_amazon(self, amazon: str) -> None:
        self.set_identifier("AMAZON", amazon)

    # -- multi-valued fields -----------------------------------------------

    def _author_nodes(self) -> list[EpubElement]:
        nodes = xpath(self._opf, '//opf:metadata/dc:creator[@opf:role="aut"]')
        if not nodes:
            # books without roles: every creator counts as an author
            nodes = xpath(self._opf, "//opf:metadata/dc:creator")
        return nodes

    def _refined_property(self, node: EpubElement, prop: str) -> str:
        node_id = node.get("id")
        if not node_id:
            return ""
        refined = first(
            self._opf,
            "//opf:metadata/opf:meta[@refines=$refines][@property=$property]",
            refines=f"#{node_id}",
            property=prop,
        )
        return refined.unescaped_text.strip() if refined is not None else ""

    def get_authors(self) -> dict[str, str]:
        """Authors as an ordered ``{file_as: name}`` mapping.

        The file-as sort key comes from ``opf:file-as``, then from an EPUB 3
        ``meta refines`` entry, and falls back to the display name.
        """
        authors: dict[str, str] = {}
        for node in self._author_nodes():
            name = node.unescaped_text
            file_as = node.get_attrib("opf:file-as") or self._refined_property(node, "file-as") or name
            authors[file_as] = name
        return authors

    def set_authors(self, authors: Union[str, Sequence[str], Mapping[str, str]]) -> None:
        """Replace all authors.

        Accepts a comma separated string, a list of names, or a
        ``{file_as: name}`` mapping. Unkeyed names are filed as themselves.
        """
        if isinstance(authors, str):
            authors = _split_list(authors)
        if isinstance(authors, Mapping):
            entries = list(authors.items())
        else:
            entries = [(name, name) for name in authors]

        metadata = self._metadata_node()
        for node in self._author_nodes():
            node_id = node.get("id")
            if node_id:
                for refining in xpath(self._opf, "//opf:metadata/opf:meta[@refines=$refines]", refines=f"#{node_id}"):
                    refining.delete()
            node.delete()
        for file_as, name in entries:
            node = metadata.new_child("dc:creator", name)
            node.set_attrib("opf:role", "aut")
            node.set_attrib("opf:file-as", file_as)
        self._sync()

    def get_subjects(self) -> list[str]:
        return [node.unescaped_text for node in xpath(self._opf, "//opf:metadata/dc:subject")]

    def set_subjects(self, subjects: Union[str, Sequence[str]]) -> None:
        if isinstance(subjects, str):
            subjects = _split_list(subjects)
        for node in xpath(self._opf, "//opf:metadata/dc:subject"):
            node.delete()
        metadata = self._metadata_node()
        for subject in subjects:
            metadata.new_child("dc:subject", subject)
        self._sync()

    # -- manifest, spine, toc ----------------------------------------------

    def _member_loader(self, member_path: str):
        return lambda: self._read_member(member_path)

    def _build_manifest(self) -> Manifest:
        manifest_node = first(self._opf, "//opf:manifest")
        if manifest_node is None:
            raise StructureError("No manifest element found in EPUB!")
        manifest = Manifest()
        for node in xpath(manifest_node, "opf:item"):
            href = node.get("href") or ""
            member_path = self._opf_member(href)
            manifest._create_item(
                node.get("id") or "",
                href,
                self._member_loader(member_path),
                size=self._member_size(member_path),
                media_type=node.get("media-type") or XHTML_MEDIA_TYPE,
                path=member_path,
            )
        return manifest

    def _build_spine(self, manifest: Manifest) -> Spine:
        spine_node = first(self._opf, "//opf:spine")
        if spine_node is None:
            raise StructureError("No spine element found in EPUB!")
        toc_id = spine_node.get("toc")
        if not toc_id:
            raise StructureError("No toc ID given in spine!")
        if toc_id not in manifest:
            raise StructureError("TOC item referenced in spine missing in manifest!")

        spine = Spine(manifest[toc_id])
        for itemref in xpath(spine_node, "opf:itemref"):
            idref = itemref.get("idref") or ""
            if idref not in manifest:
                raise StructureError(f"Item {idref} referenced in spine missing in manifest!")
            spine._append_item(manifest[idref])
        return spine

    def _load_nav_points(self, nodes: list[EpubElement], nav_points: NavPointList) -> None:
        for node in nodes:
            label_node = first(node, "*[local-name()='navLabel']/*[local-name()='text']")
            content_node = first(node, "*[local-name()='content']")
            nav_point = NavPoint.from_source(
                id=node.get("id") or "",
                class_name=node.get("class") or "",
                play_order=_play_order(node.get("playOrder") or ""),
                label=label_node.unescaped_text if label_node is not None else "",
                content_source=(content_node.get("src") or "") if content_node is not None else "",
            )
            nav_points._add_nav_point(nav_point)
            self._load_nav_points(_iter_children_by_local_name(node, "navPoint"), nav_point.children)

    def _check_nav_points(self, nav_points: NavPointList, toc_path: str, manifest: Manifest) -> None:
        for nav_point in nav_points:
            target = resolve_href(toc_path, unquote(nav_point.content_source_file))
            if target and manifest.find_by_path(target) is None:
                raise StructureError(
                    f"TOC entry {nav_point.id} references a file missing in manifest: {nav_point.content_source_file}"
                )
            self._check_nav_points(nav_point.children, toc_path, manifest)

    def _build_toc(self, spine: Spine, manifest: Manifest) -> Toc:
        toc_item = spine.toc_item
        if not toc_item.href:
            raise StructureError("TOC item does not contain hyper reference to TOC file!")
        root = self._load_xml(toc_item.path)
        title_node = first(root, "//*[local-name()='docTitle']/*[local-name()='text']")
        author_node = first(root, "//*[local-name()='docAuthor']/*[local-name()='text']")
        toc = Toc(
            doc_title=title_node.unescaped_text if title_node is not None else "",
            doc_author=author_node.unescaped_text if author_node is not None else "",
        )
        nav_map = first(root, "//*[local-name()='navMap']")
        if nav_map is not None:
            self._load_nav_points(_iter_children_by_local_name(nav_map, "navPoint"), toc.nav_map)
        self._check_nav_points(toc.nav_map, toc_item.path, manifest)
        return toc

    def get_manifest(self) -> Manifest:
        if self._manifest is None:
            self._manifest = self._build_manifest()
        return self._manifest

    def get_spine(self) -> Spine:
        if self._spine is None:
            self._spine = self._build_spine(self.get_manifest())
        return self._spine

    def get_toc(self) -> Toc:
        if self._toc is None:
            self._toc = self._build_toc(self.get_spine(), self.get_manifest())
        return self._toc

    def get_contents(self, keep_markup: bool = False, fraction: float = 1.0) -> str:
        """Contents of the whole book in reading order.

        With ``fraction < 1`` only the leading spine items whose combined size
        stays within that share of the total size are included.
        """
        spine = self.get_spine()
        items = list(spine)
        if fraction < 1:
            budget = sum(item.get_size() for item in spine) * fraction
            used = 0
            items = []
            for item in spine:
                if used + item.get_size() > budget:
                    break
                used += item.get_size()
                items.append(item)
        return "".join(item.get_contents(keep_markup=keep_markup) for item in items)

    # -- cover -----------------------------------------------------------

    def _cover_member(self) -> str:
        return self._opf_member(f"{COVER_ID}.img")

    def get_cover_item(self):
        pointer = first(self._opf, '//opf:metadata/opf:meta[@name="cover"]')
        if pointer is None:
            return None
        cover_id = pointer.get_attrib("opf:content")
        if not cover_id:
            return None
        return self.get_manifest().get(cover_id)

    def get_cover(self) -> Optional[bytes]:
        """Binary data of the cover image, or None when the book has none."""
        item = self.get_cover_item()
        if item is None:
            return None
        return self._read_member(item.path)

    def _remove_cover_nodes(self) -> None:
        for node in xpath(self._opf, '//opf:metadata/opf:meta[@name="cover"]'):
            node.delete()
        # only our own manifest entry and image go; a foreign cover image may be referenced elsewhere
        for node in xpath(self._opf, "//opf:manifest/opf:item[@id=$id]", id=COVER_ID):
            node.delete()
        self._stage_deletion(self._cover_member())

    def set_cover(self, path: Union[str, Path], mime_type: str) -> None:
        """Use the image at ``path`` as cover. The image is written on ``save()``."""
        if not path:
            raise InvalidInputError("No cover image given!")
        source = Path(path)
        if not source.is_file() or not os.access(source, os.R_OK):
            raise InvalidInputError(f"Cover image not readable: {path}")

        metadata = self._metadata_node()
        manifest_node = first(self._opf, "//opf:manifest")
        if manifest_node is None:
            raise StructureError("No manifest element found in EPUB!")

        self._remove_cover_nodes()
        pointer = metadata.new_child("opf:meta")
        pointer.set_attrib("opf:name", "cover")
        pointer.set_attrib("opf:content", COVER_ID)

        item = manifest_node.new_child("opf:item")
        item.set_attrib("id", COVER_ID)
        item.set_attrib("opf:href", f"{COVER_ID}.img")
        item.set_attrib("opf:media-type", mime_type)

        self._stage(self._cover_member(), source)
        self._sync()

    def clear_cover(self) -> None:
        if first(self._opf, '//opf:metadata/opf:meta[@name="cover"]') is None:
            return
        self._remove_cover_nodes()
        self._sync()

    # -- title page ------------------------------------------------------

    def _title_page_member(self) -> str:
        return self._opf_member(f"{TITLE_PAGE_ID}.xhtml")

    def _remove_title_page_nodes(self) -> None:
        href = f"{TITLE_PAGE_ID}.xhtml"
        for node in xpath(self._opf, "//opf:manifest/opf:item[@id=$id]", id=TITLE_PAGE_ID):
            node.delete()
        for node in xpath(self._opf, "//opf:spine/opf:itemref[@idref=$id]", id=TITLE_PAGE_ID):
            node.delete()
        for node in xpath(self._opf, "//opf:guide/opf:reference[@href=$href]", href=href):
            node.delete()
        self._stage_deletion(self._title_page_member())

    def add_cover_image_title_page(self, template: Optional[str] = None) -> None:
        """Put a generated page showing the cover image at the front of the book.

        ``template`` is Jinja2 source rendered with ``title`` and
        ``cover_href``; the bundled ``titlepage.xhtml.j2`` is used otherwise.
        """
        manifest_node = first(self._opf, "//opf:manifest")
        spine_node = first(self._opf, "//opf:spine")
        if manifest_node is None or spine_node is None:
            raise StructureError("Cannot add a title page without manifest and spine!")

        cover_item = self.get_cover_item()
        member = self._title_page_member()
        cover_href = ""
        if cover_item is not None and cover_item.path:
            start = posixpath.dirname(member) or "."
            cover_href = posixpath.relpath(cover_item.path, start=start)
        content = _render_title_page(template, title=self.get_title(), cover_href=cover_href)

        self._remove_title_page_nodes()
        href = f"{TITLE_PAGE_ID}.xhtml"

        item = manifest_node.new_child("opf:item")
        item.set_attrib("id", TITLE_PAGE_ID)
        item.set_attrib("opf:href", href)
        item.set_attrib("opf:media-type", XHTML_MEDIA_TYPE)
        manifest_node.insert(0, item)

        itemref = spine_node.new_child("opf:itemref")
        itemref.set_attrib("opf:idref", TITLE_PAGE_ID)
        spine_node.insert(0, itemref)

        guide_node = first(self._opf, "//opf:guide")
        if guide_node is None:
            guide_node = self._opf.new_child("opf:guide")
        reference = guide_node.new_child("opf:reference")
        reference.set_attrib("opf:type", "title-page")
        reference.set_attrib("opf:title", "Title Page")
        reference.set_attrib("opf:href", href)
        guide_node.insert(0, reference)

        self._stage(member, content.encode("utf-8"))
        self._sync()

    def remove_title_page(self) -> None:
        self._remove_title_page_nodes()
        self._sync()
