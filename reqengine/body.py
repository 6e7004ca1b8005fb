"""Request body builder - picks one body mode and encodes it.

The body mode is decided once by select_body_mode using a fixed
precedence (raw > json > xml > files > form > empty); lower-precedence
options are ignored, never merged in. Upload streams are always closed
before build_request returns or raises.
"""

from __future__ import annotations

import functools
import io
import mimetypes
import os
import posixpath
import shutil
from typing import BinaryIO, Callable
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from reqengine.errors import BodyEncodingError, OptionParseError
from reqengine.models import BodyMode, BuiltRequest, FileUpload, RequestOptions

DEFAULT_UPLOAD_MIME = "application/octet-stream"

_BodyParts = tuple[bytes | None, str | None]

# Query component escaping: "/" and every other reserved character is encoded.
_quote_query = functools.partial(quote, safe="")


def _escape_quotes(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def guess_mime(file_name: str) -> str:
    """Content type from the file extension, octet-stream when unknown."""
    mime, _ = mimetypes.guess_type(file_name)
    return mime or DEFAULT_UPLOAD_MIME


class MultipartWriter:
    """Writes a multipart/form-data body into memory.

    Usage:
        writer = MultipartWriter()
        writer.write_file("f", "x.txt", stream)
        writer.write_field("k", "v")
        body = writer.close()
        content_type = writer.content_type
    """

    def __init__(self, boundary: str | None = None) -> None:
        self.boundary = boundary or os.urandom(16).hex()
        self._buffer = io.BytesIO()
        self._parts = 0

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def _begin_part(self, headers: list[tuple[str, str]]) -> None:
        delimiter = f"--{self.boundary}\r\n"
        if self._parts:
            delimiter = "\r\n" + delimiter
        lines = "".join(f"{name}: {value}\r\n" for name, value in headers)
        self._buffer.write((delimiter + lines + "\r\n").encode("utf-8"))
        self._parts += 1

    def write_file(self, field_name: str, file_name: str, stream: BinaryIO, mime: str | None = None) -> None:
        disposition = (
            f'form-data; name="{_escape_quotes(field_name)}"; '
            f'filename="{_escape_quotes(file_name)}"'
        )
        self._begin_part([
            ("Content-Disposition", disposition),
            ("Content-Type", mime or guess_mime(file_name)),
        ])
        try:
            shutil.copyfileobj(stream, self._buffer)
        except (OSError, ValueError) as e:
            raise BodyEncodingError(f"cannot read upload {file_name!r}: {e}") from e

    def write_field(self, name: str, value: str) -> None:
        self._begin_part([("Content-Disposition", f'form-data; name="{_escape_quotes(name)}"')])
        self._buffer.write(value.encode("utf-8"))

    def close(self) -> bytes:
        closing = f"--{self.boundary}--\r\n"
        if self._parts:
            closing = "\r\n" + closing
        self._buffer.write(closing.encode("utf-8"))
        return self._buffer.getvalue()


def select_body_mode(options: RequestOptions) -> BodyMode:
    """The single body mode that applies, by fixed precedence."""
    if options.raw_data:
        return BodyMode.RAW
    if options.json_body:
        return BodyMode.JSON
    if options.xml:
        return BodyMode.XML
    if options.files:
        return BodyMode.FILES
    if options.data is not None:
        return BodyMode.FORM
    return BodyMode.EMPTY


def encode_form(data: dict[str, str]) -> str:
    """key=value&... with keys sorted, so the result ignores insertion order."""
    return urlencode(sorted(data.items()))


def upload_field_name(upload: FileUpload, index: int, total: int) -> str:
    if upload.field_name:
        return upload.field_name
    return f"file{index + 1}" if total > 1 else "file"


def _raw_body(method: str, options: RequestOptions) -> _BodyParts:
    return options.raw_data.encode("utf-8"), None


def _json_body(method: str, options: RequestOptions) -> _BodyParts:
    return options.json_body.encode("utf-8"), "application/json"


def _xml_body(method: str, options: RequestOptions) -> _BodyParts:
    return options.xml.encode("utf-8"), "application/xml"


def _files_body(method: str, options: RequestOptions) -> _BodyParts:
    for upload in options.files:
        if upload.content is None:
            raise BodyEncodingError(f"upload {upload.file_name!r} has no content stream")

    if method != "POST":
        # PUT/PATCH upload-as-payload: only the first file, no multipart envelope.
        upload = options.files[0]
        try:
            content = upload.content.read()
        except (OSError, ValueError) as e:
            raise BodyEncodingError(f"cannot read upload {upload.file_name!r}: {e}") from e
        return content, upload.mime or guess_mime(upload.file_name)

    writer = MultipartWriter()
    total = len(options.files)
    for index, upload in enumerate(options.files):
        field_name = upload_field_name(upload, index, total)
        writer.write_file(field_name, posixpath.basename(upload.file_name), upload.content, upload.mime)
    for key, value in sorted((options.data or {}).items()):
        writer.write_field(key, value)
    return writer.close(), writer.content_type


def _form_body(method: str, options: RequestOptions) -> _BodyParts:
    return encode_form(options.data or {}).encode("ascii"), "application/x-www-form-urlencoded"


def _empty_body(method: str, options: RequestOptions) -> _BodyParts:
    return None, None


_BODY_BUILDERS: dict[BodyMode, Callable[[str, RequestOptions], _BodyParts]] = {
    BodyMode.RAW: _raw_body,
    BodyMode.JSON: _json_body,
    BodyMode.XML: _xml_body,
    BodyMode.FILES: _files_body,
    BodyMode.FORM: _form_body,
    BodyMode.EMPTY: _empty_body,
}


def build_url(url: str, options: RequestOptions) -> str:
    """Apply raw_query or merge params into the URL's query string.

    raw_query replaces the query verbatim and params are then ignored.
    Otherwise existing parameters are merged with params (params win on a
    key collision), keys are sorted and spaces come out as %20.
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise OptionParseError(f"invalid URL {url!r}: {e}") from e
    if not parts.scheme or not parts.netloc:
        raise OptionParseError(f"URL must be absolute: {url!r}")

    if options.raw_query:
        query = options.raw_query
    else:
        merged: dict[str, list[str]] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            merged.setdefault(key, []).append(value)
        for key, value in options.params.items():
            merged[key] = [value]
        pairs = [(key, value) for key in sorted(merged) for value in merged[key]]
        query = urlencode(pairs, quote_via=_quote_query)

    result = urlunsplit(parts._replace(query=query))
    try:
        httpx.URL(result)
    except httpx.InvalidURL as e:
        raise OptionParseError(f"invalid URL {result!r}: {e}") from e
    return result


def build_request(method: str, url: str, options: RequestOptions) -> BuiltRequest:
    """Build the request for one call.

    Raises:
        OptionParseError: If the URL cannot be parsed.
        BodyEncodingError: If an upload has no content or cannot be read.
    """
    method = method.upper()
    try:
        full_url = build_url(url, options)
        mode = select_body_mode(options)
        content, content_type = _BODY_BUILDERS[mode](method, options)
    finally:
        options.close_files()

    headers = httpx.Headers()
    if content_type is not None:
        headers["Content-Type"] = content_type
    return BuiltRequest(method=method, url=full_url, headers=headers, content=content, body_mode=mode)
