import os
import shutil
import zipfile
import zlib
from typing import Any, Callable, Dict, List, Optional

OPEN_FAILED = "open_failed"
MKDIR_FAILED = "mkdir_failed"
ENTRY_FAILED = "entry_failed"

METADATA_DIR_PREFIX = "__MACOSX"
METADATA_FILE_PREFIX = "._"


class ExtractError(RuntimeError):
    """Raised when an archive cannot be opened or one of its entries cannot be written."""

    def __init__(self, kind: str, message: str, entry: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.entry = entry
        self.cause = cause


def is_metadata_entry(name: str) -> bool:
    """True for archiver metadata such as `__MACOSX/...` trees and `._name` resource forks."""
    if name.startswith(METADATA_DIR_PREFIX) or name.startswith(METADATA_FILE_PREFIX):
        return True
    basename = name.rstrip("/").rsplit("/", 1)[-1]
    return basename.startswith(METADATA_FILE_PREFIX)


def extract_zip(
    archive_path: str,
    target_dir: str,
    emit: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """Unpack `archive_path` into `target_dir` in archive order.

    Existing files are overwritten. The first failing entry aborts the whole
    extraction with an ExtractError. `emit` receives each written file path.
    """
    try:
        zf = zipfile.ZipFile(archive_path)
    except (OSError, zipfile.BadZipFile) as e:
        raise ExtractError(OPEN_FAILED, f"could not open zip: {e}", cause=e)

    extracted: List[str] = []
    directories: List[str] = []
    skipped = 0
    with zf:
        for info in zf.infolist():
            if is_metadata_entry(info.filename):
                skipped += 1
                continue

            path = os.path.join(target_dir, info.filename)
            if info.is_dir():
                try:
                    os.makedirs(path, exist_ok=True)
                except OSError as e:
                    raise ExtractError(MKDIR_FAILED, f"create dir error: {e}", entry=info.filename, cause=e)
                directories.append(path)
                continue

            try:
                os.makedirs(os.path.dirname(path), exist_ok=True)
            except OSError as e:
                raise ExtractError(MKDIR_FAILED, f"create dir error: {e}", entry=info.filename, cause=e)

            try:
                src = zf.open(info)
            except (OSError, zipfile.BadZipFile, NotImplementedError, RuntimeError) as e:
                raise ExtractError(ENTRY_FAILED, f"open zip entry error: {e}", entry=info.filename, cause=e)
            with src:
                try:
                    dst = open(path, "wb")
                except OSError as e:
                    raise ExtractError(ENTRY_FAILED, f"create file error: {e}", entry=info.filename, cause=e)
                with dst:
                    try:
                        shutil.copyfileobj(src, dst)
                    except (OSError, zipfile.BadZipFile, zlib.error) as e:
                        raise ExtractError(ENTRY_FAILED, f"extract file error: {e}", entry=info.filename, cause=e)

            extracted.append(path)
            if emit:
                emit(path)

    return {"status": "ok", "extracted": extracted, "directories": directories, "skipped": skipped}
