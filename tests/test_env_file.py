import os
import tempfile
import unittest
from pathlib import Path

from epubmeta.env import DEFAULT_TEMPLATES_DIR, TEMPLATES_DIR_ENV, read_env, templates_dir
from epubmeta.epub import Epub

from epub_fixture import build_romeo_epub


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


class EnvFileTests(unittest.TestCase):
    def test_read_env_prefers_plain_value(self) -> None:
        prev_plain = os.environ.get("EPUBMETA_SAMPLE")
        prev_file = os.environ.get("EPUBMETA_SAMPLE_FILE")
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file")
            file_path = tmp.name
        try:
            os.environ["EPUBMETA_SAMPLE"] = "from-env"
            os.environ["EPUBMETA_SAMPLE_FILE"] = file_path
            self.assertEqual(read_env("EPUBMETA_SAMPLE"), "from-env")
        finally:
            Path(file_path).unlink(missing_ok=True)
            _restore_env("EPUBMETA_SAMPLE", prev_plain)
            _restore_env("EPUBMETA_SAMPLE_FILE", prev_file)

    def test_read_env_supports_file_suffix(self) -> None:
        prev_plain = os.environ.get("EPUBMETA_SAMPLE")
        prev_file = os.environ.get("EPUBMETA_SAMPLE_FILE")
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file\n")
            file_path = tmp.name
        try:
            os.environ.pop("EPUBMETA_SAMPLE", None)
            os.environ["EPUBMETA_SAMPLE_FILE"] = file_path
            self.assertEqual(read_env("EPUBMETA_SAMPLE"), "from-file")
        finally:
            Path(file_path).unlink(missing_ok=True)
            _restore_env("EPUBMETA_SAMPLE", prev_plain)
            _restore_env("EPUBMETA_SAMPLE_FILE", prev_file)

    def test_read_env_falls_back_to_default(self) -> None:
        prev_plain = os.environ.get("EPUBMETA_SAMPLE")
        prev_file = os.environ.get("EPUBMETA_SAMPLE_FILE")
        try:
            os.environ.pop("EPUBMETA_SAMPLE", None)
            os.environ["EPUBMETA_SAMPLE_FILE"] = "/nonexistent/epubmeta/sample"
            self.assertEqual(read_env("EPUBMETA_SAMPLE", "fallback"), "fallback")
        finally:
            _restore_env("EPUBMETA_SAMPLE", prev_plain)
            _restore_env("EPUBMETA_SAMPLE_FILE", prev_file)

    def test_template_dir_can_read_from_file(self) -> None:
        prev_dir = os.environ.get(TEMPLATES_DIR_ENV)
        prev_dir_file = os.environ.get(f"{TEMPLATES_DIR_ENV}_FILE")
        with tempfile.TemporaryDirectory() as tmp:
            template_target = Path(tmp) / "templates"
            dir_file = Path(tmp) / "template_dir.txt"
            dir_file.write_text(str(template_target), encoding="utf-8")
            try:
                os.environ.pop(TEMPLATES_DIR_ENV, None)
                os.environ.pop(f"{TEMPLATES_DIR_ENV}_FILE", None)
                self.assertEqual(templates_dir(), DEFAULT_TEMPLATES_DIR)

                os.environ[f"{TEMPLATES_DIR_ENV}_FILE"] = str(dir_file)
                self.assertEqual(templates_dir(), template_target)
            finally:
                _restore_env(TEMPLATES_DIR_ENV, prev_dir)
                _restore_env(f"{TEMPLATES_DIR_ENV}_FILE", prev_dir_file)

    def test_title_page_uses_configured_template_dir(self) -> None:
        prev_dir = os.environ.get(TEMPLATES_DIR_ENV)
        with tempfile.TemporaryDirectory() as tmp:
            template_dir = Path(tmp) / "templates"
            template_dir.mkdir()
            (template_dir / "titlepage.xhtml.j2").write_text(
                "<html xmlns=\"http://www.w3.org/1999/xhtml\"><body><p>Custom {{ title }}</p></body></html>",
                encoding="utf-8",
            )
            book = Epub(build_romeo_epub(Path(tmp) / "romeo.epub"))
            try:
                os.environ[TEMPLATES_DIR_ENV] = str(template_dir)
                book.add_cover_image_title_page()
                self.assertEqual(book.get_spine().first().get_contents().strip(), "Custom Romeo and Juliet")
            finally:
                book.close()
                _restore_env(TEMPLATES_DIR_ENV, prev_dir)


if __name__ == "__main__":
    unittest.main()
