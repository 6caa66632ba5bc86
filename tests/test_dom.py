import unittest

from epubmeta.dom import (
    EpubElement,
    convert_named_entities_to_numeric,
    first,
    reparse,
    serialize,
    xhtml_root_from_bytes,
    xml_root_from_bytes,
    xpath,
)
from epubmeta.errors import ConfigurationError, StructureError
from epubmeta.namespaces import DC_NS, OPF_NS, XPATH_NAMESPACES, namespace_uri, split_qualified_name

PACKAGE = (
    b"<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
    b"<package xmlns=\"http://www.idpf.org/2007/opf\" unique-identifier=\"BookId\" version=\"2.0\">"
    b"<metadata xmlns:dc=\"http://purl.org/dc/elements/1.1/\" xmlns:opf=\"http://www.idpf.org/2007/opf\">"
    b"<dc:title>Title</dc:title>"
    b"<dc:creator opf:role=\"aut\">Someone</dc:creator>"
    b"<meta name=\"cover\" content=\"img\"/>"
    b"</metadata></package>"
)


class NamespaceTests(unittest.TestCase):
    def test_known_prefixes(self) -> None:
        self.assertEqual(namespace_uri("opf"), OPF_NS)
        self.assertEqual(namespace_uri("dc"), DC_NS)
        self.assertEqual(namespace_uri("n"), namespace_uri("ocf"))
        self.assertEqual(set(XPATH_NAMESPACES), {"n", "ocf", "opf", "dc", "ncx", "xhtml"})

    def test_unknown_prefix(self) -> None:
        with self.assertRaisesRegex(ConfigurationError, "Unknown XML namespace foo"):
            namespace_uri("foo")

    def test_registry_is_read_only(self) -> None:
        with self.assertRaises(TypeError):
            XPATH_NAMESPACES["foo"] = "urn:foo"

    def test_split_qualified_name(self) -> None:
        self.assertEqual(split_qualified_name("dc:title"), ("dc", "title"))
        self.assertEqual(split_qualified_name("href"), ("", "href"))


class ElementTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = xml_root_from_bytes(PACKAGE, "package")
        self.metadata = first(self.root, "//opf:metadata")

    def test_parser_installs_element_class(self) -> None:
        self.assertIsInstance(self.root, EpubElement)
        self.assertIsInstance(first(self.root, "//dc:title"), EpubElement)

    def test_attribute_in_own_namespace_is_unqualified(self) -> None:
        meta = first(self.root, "//opf:meta")
        self.assertEqual(meta.get_attrib("opf:name"), "cover")
        self.assertEqual(meta.get_attrib("name"), "cover")

        meta.set_attrib("opf:content", "other")
        self.assertEqual(meta.get("content"), "other")
        self.assertIsNone(meta.get(f"{{{OPF_NS}}}content"))

    def test_attribute_in_foreign_namespace_is_qualified(self) -> None:
        creator = first(self.root, "//dc:creator")
        self.assertEqual(creator.get_attrib("opf:role"), "aut")
        self.assertEqual(creator.get_attrib("opf:file-as"), "")

        creator.set_attrib("opf:file-as", "One, Some")
        self.assertEqual(creator.get(f"{{{OPF_NS}}}file-as"), "One, Some")
        self.assertIn(b"opf:file-as=\"One, Some\"", serialize(self.root))

        creator.remove_attrib("opf:file-as")
        creator.remove_attrib("opf:file-as")
        self.assertEqual(creator.get_attrib("opf:file-as"), "")

    def test_unknown_prefix_in_attribute(self) -> None:
        with self.assertRaises(ConfigurationError):
            first(self.root, "//dc:title").get_attrib("foo:bar")

    def test_new_child_reuses_declared_prefix(self) -> None:
        self.metadata.new_child("dc:subject", "Drama")
        meta = self.metadata.new_child("opf:meta")
        self.assertEqual(meta.tag, f"{{{OPF_NS}}}meta")
        raw = serialize(self.root)
        self.assertIn(b"<dc:subject>Drama</dc:subject>", raw)
        self.assertEqual(raw.count(b"xmlns:dc="), 1)
        self.assertEqual(raw.count(b"xmlns:opf="), 1)
        self.assertEqual(len(xpath(reparse(self.root), "//opf:metadata/opf:meta")), 2)

    def test_new_child_declares_missing_prefix(self) -> None:
        root = xml_root_from_bytes(b"<package xmlns=\"http://www.idpf.org/2007/opf\"><metadata/></package>")
        child = first(root, "//opf:metadata").new_child("dc:title", "Fresh")
        self.assertEqual(child.tag, f"{{{DC_NS}}}title")
        self.assertIn(b"xmlns:dc=\"http://purl.org/dc/elements/1.1/\"", serialize(root))

    def test_text_views(self) -> None:
        title = first(self.root, "//dc:title")
        title.unescaped_text = "Fish & Chips <3"
        self.assertEqual(title.unescaped_text, "Fish & Chips <3")
        self.assertEqual(title.escaped_text, "Fish &amp; Chips &lt;3")
        self.assertIn(b"Fish &amp; Chips &lt;3", serialize(self.root))

    def test_delete(self) -> None:
        first(self.root, "//dc:title").delete()
        self.assertIsNone(first(self.root, "//dc:title"))
        self.assertIsNotNone(first(self.root, "//dc:creator"))

    def test_delete_keeps_tail_text(self) -> None:
        root = xml_root_from_bytes(b"<p>a<b>bold</b>b<i>it</i>c</p>")
        first(root, "//b").delete()
        first(root, "//i").delete()
        self.assertEqual(root.unescaped_text, "abc")

    def test_reparse_returns_fresh_tree(self) -> None:
        self.metadata.new_child("dc:language", "en")
        fresh = reparse(self.root)
        self.assertIsNot(fresh, self.root)
        self.assertIsInstance(fresh, EpubElement)
        self.assertEqual([node.unescaped_text for node in xpath(fresh, "//dc:language")], ["en"])

    def test_broken_document(self) -> None:
        with self.assertRaisesRegex(StructureError, "Failed to parse XML document: broken.xml"):
            xml_root_from_bytes(b"", "broken.xml")


class EntityTests(unittest.TestCase):
    def test_named_entities_become_numeric(self) -> None:
        self.assertEqual(
            convert_named_entities_to_numeric(b"a&nbsp;b&mdash;c&amp;d&lt;e&unknownthing;"),
            b"a&#160;b&#8212;c&amp;d&lt;e&unknownthing;",
        )

    def test_xhtml_with_html_entities_parses(self) -> None:
        root = xhtml_root_from_bytes(b"<html><body><p>Caf&eacute;&nbsp;&amp; bar</p></body></html>")
        self.assertEqual(first(root, "//p").xpath("string()"), "Caf\u00e9\u00a0& bar")


if __name__ == "__main__":
    unittest.main()
