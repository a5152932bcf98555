"""Reading of the result file referenced by the protocol response."""

from __future__ import annotations

import codecs
import re
from pathlib import Path

from loguru import logger

DEFAULT_ENCODING = "utf-8"

_BOMS: list[tuple[bytes, str]] = [
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
]

_XML_DECLARATION_ENCODING = re.compile(
    rb"""^\s*<\?xml[^>]*\sencoding\s*=\s*["']([A-Za-z0-9._\-]+)["']""",
)


class ResultResolutionError(Exception):
    """The result file could not be read."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


def detect_encoding(data: bytes) -> str:
    """Detect the encoding of an XML document.

    A byte order mark wins over the XML declaration. Without either the
    document is treated as UTF-8.
    """
    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return encoding

    match = _XML_DECLARATION_ENCODING.match(data[:200])
    if match:
        name = match.group(1).decode("ascii")
        try:
            return codecs.lookup(name).name
        except LookupError:
            logger.warning(f"Unknown encoding '{name}' in XML declaration, using {DEFAULT_ENCODING}")

    return DEFAULT_ENCODING


class ResultFileReader:
    """Reads a result file exactly once.

    The file is deleted after its content has been read, so a result is
    never served twice.
    """

    def __init__(self, delete_after_read: bool = True):
        self._delete_after_read = delete_after_read

    def read(self, file_name: str | Path) -> str:
        """Read and consume a result file.

        Raises:
            ResultResolutionError: If the file is missing, unreadable or cannot be decoded
        """
        path = Path(file_name)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ResultResolutionError(f"Error accessing results file {path}: {e}", str(path)) from e

        encoding = detect_encoding(data)
        try:
            content = data.decode(encoding)
        except UnicodeDecodeError as e:
            raise ResultResolutionError(
                f"Error decoding results file {path} as {encoding}: {e}", str(path)
            ) from e

        if self._delete_after_read:
            try:
                path.unlink()
            except OSError as e:
                raise ResultResolutionError(f"Error deleting results file {path}: {e}", str(path)) from e
            logger.debug(f"Consumed result file {path}")

        return content
