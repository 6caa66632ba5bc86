from __future__ import annotations

import logging
import posixpath
from pathlib import Path
import shutil
import tempfile
from typing import Mapping, Optional, Union
import zipfile
import zlib

from .errors import EpubIOError

logger = logging.getLogger("epubmeta.archive")

ArchivePayload = Union[bytes, Path]

READ_FAILED = "Failed to read EPUB file."


def canonical_member(name: str) -> str:
    normalized = posixpath.normpath((name or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", "."} else normalized


def resolve_href(base_member: str, href: str) -> str:
    """Resolve an href found in ``base_member`` to an archive member path."""
    raw = (href or "").split("#", 1)[0].strip()
    if not raw:
        return ""
    base_dir = posixpath.dirname(base_member)
    return canonical_member(posixpath.join(base_dir, raw) if base_dir else raw)


def open_archive(path: Union[str, Path]) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(path, "r")
    except FileNotFoundError as exc:
        raise EpubIOError(f"{READ_FAILED} No such file.", reason="not_found", code=exc.errno) from exc
    except zipfile.BadZipFile as exc:
        if str(exc) == "File is not a zip file":
            raise EpubIOError(f"{READ_FAILED} Not a zip archive.", reason="not_a_zip") from exc
        raise EpubIOError(f"{READ_FAILED} Zip archive inconsistent.", reason="inconsistent") from exc
    except (EOFError, ValueError) as exc:
        raise EpubIOError(f"{READ_FAILED} Zip archive inconsistent.", reason="inconsistent") from exc
    except OSError as exc:
        raise EpubIOError(f"{READ_FAILED} Error code {exc.errno}.", reason="unknown", code=exc.errno) from exc


class ArchiveMembers:
    """Read access to the members of an open EPUB archive, by canonical path."""

    def __init__(self, zf: zipfile.ZipFile) -> None:
        self.zf = zf
        self._index: dict[str, zipfile.ZipInfo] = {}
        for info in zf.infolist():
            canonical = canonical_member(info.filename)
            if canonical and canonical not in self._index:
                self._index[canonical] = info

    def names(self) -> list[str]:
        return list(self._index)

    def __contains__(self, member_path: object) -> bool:
        return isinstance(member_path, str) and canonical_member(member_path) in self._index

    def read(self, member_path: str) -> Optional[bytes]:
        info = self._index.get(canonical_member(member_path))
        if info is None:
            return None
        try:
            return self.zf.read(info)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as exc:
            raise EpubIOError(f"{READ_FAILED} Failed to read member {member_path}.", reason="inconsistent") from exc

    def size(self, member_path: str) -> int:
        info = self._index.get(canonical_member(member_path))
        return info.file_size if info is not None else 0

    def close(self) -> None:
        self.zf.close()


def _clone_zip_info(
    info: zipfile.ZipInfo,
    *,
    compress_type: Optional[int] = None,
) -> zipfile.ZipInfo:
    cloned = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    cloned.compress_type = info.compress_type if compress_type is None else compress_type
    cloned.comment = info.comment
    cloned.extra = info.extra
    cloned.internal_attr = info.internal_attr
    cloned.external_attr = info.external_attr
    cloned.create_system = info.create_system
    cloned.create_version = info.create_version
    cloned.extract_version = info.extract_version
    cloned.flag_bits = info.flag_bits
    return cloned


def _copy_zip_member_stream(
    src: zipfile.ZipFile,
    dst: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    *,
    chunk_size: int = 1024 * 1024,
) -> None:
    if canonical_member(info.filename) == "mimetype":
        dst.writestr("mimetype", src.read(info.filename), compress_type=zipfile.ZIP_STORED)
        return
    zinfo = _clone_zip_info(info)
    with src.open(info.filename, "r") as src_stream:
        with dst.open(zinfo, "w") as dst_stream:
            shutil.copyfileobj(src_stream, dst_stream, chunk_size)


def _write_payload(dst: zipfile.ZipFile, target: Union[str, zipfile.ZipInfo], payload: ArchivePayload) -> None:
    if isinstance(payload, Path):
        payload = payload.read_bytes()
    dst.writestr(target, payload, compress_type=zipfile.ZIP_DEFLATED)


def rewrite_archive(
    epub_file: Path,
    writes: Mapping[str, ArchivePayload],
    deletions: Optional[set[str]] = None,
) -> None:
    """Rewrite ``epub_file`` with members replaced, added or dropped.

    Untouched members are streamed over unchanged; ``mimetype`` always goes
    first and uncompressed. The file on disk is only replaced once the new
    archive is complete.
    """
    pending = {canonical_member(name): payload for name, payload in writes.items()}
    dropped = {canonical_member(name) for name in deletions or set()}
    try:
        src = zipfile.ZipFile(epub_file, "r")
    except (zipfile.BadZipFile, OSError) as exc:
        raise EpubIOError(f"{READ_FAILED} Failed to reopen archive for writing.", reason="inconsistent") from exc

    tmp_handle = tempfile.NamedTemporaryFile(
        prefix=f"{epub_file.stem}.",
        suffix=".epub",
        dir=str(epub_file.parent),
        delete=False,
    )
    tmp_path = Path(tmp_handle.name)
    tmp_handle.close()

    try:
        try:
            with src, zipfile.ZipFile(tmp_path, "w") as dst:
                infos = src.infolist()
                for info in infos:
                    if canonical_member(info.filename) == "mimetype":
                        _copy_zip_member_stream(src, dst, info)
                        break
                written: set[str] = {"mimetype"}
                for info in infos:
                    canonical = canonical_member(info.filename)
                    if not canonical or canonical in written or canonical in dropped:
                        continue
                    written.add(canonical)
                    if canonical in pending:
                        _write_payload(dst, _clone_zip_info(info, compress_type=zipfile.ZIP_DEFLATED), pending[canonical])
                    else:
                        _copy_zip_member_stream(src, dst, info)
                for name, payload in pending.items():
                    if name in written or name in dropped:
                        continue
                    _write_payload(dst, name, payload)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise EpubIOError(f"{READ_FAILED} Zip archive inconsistent.", reason="inconsistent") from exc
        tmp_path.replace(epub_file)
        logger.info(
            "rewrote %s: %d member(s) written, %d dropped",
            epub_file,
            len(pending),
            len(dropped),
        )
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
