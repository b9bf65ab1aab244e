"""Multipart Reader - incremental parse of upload bodies with per-file limits

Self-Explanatory: Feed raw body chunks, get back patientId + one FilePart per file part.
How: python-multipart callbacks. A disallowed media type is classified from the part
headers and its bytes are never kept; oversized and over-limit parts are dropped the
same way. Only framing errors abort the whole body.
"""

from typing import AsyncIterable, FrozenSet, List, Optional

import structlog
from pydantic import BaseModel
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from clinidocs.config import ALLOWED_MEDIA_TYPES, MAX_FILE_BYTES, MAX_FILES_PER_REQUEST
from clinidocs.documents.errors import MalformedUploadError
from clinidocs.documents.models import FileOutcome, FilePart

logger = structlog.get_logger()

PATIENT_ID_FIELD = "patientId"
MAX_FIELD_BYTES = 1024 * 1024
DEFAULT_MEDIA_TYPE = "application/octet-stream"


class ParsedUpload(BaseModel):
    patient_id: Optional[str] = None
    parts: List[FilePart] = []

    @property
    def accepted(self) -> List[FilePart]:
        return [p for p in self.parts if p.outcome == FileOutcome.ACCEPTED]


def _decode(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


class _PartState:
    def __init__(self, name: str, filename: Optional[str] = None, media_type: str = "",
                 outcome: Optional[FileOutcome] = None):
        self.name = name
        self.filename = filename  # None for plain form fields
        self.media_type = media_type
        self.outcome = outcome
        self.buffer = bytearray()
        self.total_bytes = 0


class MultipartReader:
    def __init__(
        self,
        content_type: Optional[str],
        max_file_bytes: int = MAX_FILE_BYTES,
        max_files: int = MAX_FILES_PER_REQUEST,
        allowed_media_types: FrozenSet[str] = ALLOWED_MEDIA_TYPES,
        max_field_bytes: int = MAX_FIELD_BYTES,
    ):
        if not content_type:
            raise MalformedUploadError("Missing Content-Type header")
        media_type, params = parse_options_header(content_type)
        media_type = media_type.lower()
        if media_type != b"multipart/form-data":
            raise MalformedUploadError(f"Unsupported content type: {_decode(media_type)}")
        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedUploadError("Missing boundary in multipart body")

        self.max_file_bytes = max_file_bytes
        self.max_files = max_files
        self.allowed_media_types = allowed_media_types
        self.max_field_bytes = max_field_bytes

        self.patient_id: Optional[str] = None
        self.parts: List[FilePart] = []
        self._file_count = 0
        self._ended = False
        self._part: Optional[_PartState] = None
        self._headers = {}
        self._header_field = b""
        self._header_value = b""

        self._parser = MultipartParser(
            boundary,
            {
                "on_part_begin": self._on_part_begin,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_end": self._on_end,
            },
        )

    def feed(self, chunk: bytes) -> None:
        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise MalformedUploadError(str(e)) from e

    def finish(self) -> ParsedUpload:
        self._parser.finalize()
        if not self._ended:
            raise MalformedUploadError("Unexpected end of multipart body")
        return ParsedUpload(patient_id=self.patient_id, parts=self.parts)

    # -- parser callbacks --------------------------------------------------

    def _on_part_begin(self) -> None:
        self._part = None
        self._headers = {}
        self._header_field = b""
        self._header_value = b""

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition"))
        name = _decode(options.get(b"name", b""))

        if b"filename" not in options:
            self._part = _PartState(name)
            return

        self._file_count += 1
        filename = _decode(options[b"filename"])
        if b"content-type" in self._headers:
            media_type = _decode(parse_options_header(self._headers[b"content-type"])[0]).lower()
        else:
            media_type = DEFAULT_MEDIA_TYPE

        if self._file_count > self.max_files:
            outcome = FileOutcome.REJECTED_BY_LIMIT
        elif media_type not in self.allowed_media_types:
            outcome = FileOutcome.REJECTED_INVALID_TYPE
        else:
            outcome = FileOutcome.ACCEPTED
        self._part = _PartState(name, filename, media_type, outcome)

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        part = self._part
        if part is None:
            return

        if part.filename is None:
            room = self.max_field_bytes - len(part.buffer)
            if room > 0:
                part.buffer += data[start:min(end, start + room)]
            return

        if part.outcome != FileOutcome.ACCEPTED:
            return

        part.total_bytes += end - start
        if part.total_bytes > self.max_file_bytes:
            part.outcome = FileOutcome.REJECTED_OVERSIZED
            part.buffer = bytearray()
            return
        part.buffer += data[start:end]

    def _on_part_end(self) -> None:
        part = self._part
        self._part = None
        if part is None:
            return

        if part.filename is None:
            if part.name == PATIENT_ID_FIELD:
                self.patient_id = _decode(bytes(part.buffer))
            return

        accepted = part.outcome == FileOutcome.ACCEPTED
        self.parts.append(
            FilePart(
                field_name=part.name,
                filename=part.filename,
                media_type=part.media_type,
                outcome=part.outcome,
                data=bytes(part.buffer) if accepted else b"",
            )
        )
        if not accepted:
            logger.info("File part skipped", filename=part.filename, media_type=part.media_type,
                        reason=part.outcome.value)

    def _on_end(self) -> None:
        self._ended = True


async def read_multipart(content_type: Optional[str], stream: AsyncIterable[bytes], **limits) -> ParsedUpload:
    """Drive a MultipartReader from an async body stream"""
    reader = MultipartReader(content_type, **limits)
    async for chunk in stream:
        if chunk:
            reader.feed(chunk)
    return reader.finish()
