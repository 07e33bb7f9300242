"""Upload validation and document unpacking for prospect files."""

import io
import logging
import os
import zipfile
from typing import Optional

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024

ALLOWED_MIME_TYPES = {
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/x-zip-compressed": "zip",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "ppt",
}

ALLOWED_EXTENSIONS = {
    ".pdf": "pdf",
    ".zip": "zip",
    ".ppt": "ppt",
    ".pptx": "ppt",
}

PDF_MAGIC = b"%PDF"


class UploadValidationError(ValueError):
    """Raised when an uploaded file is rejected. ``status_code`` is the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def file_extension(filename: Optional[str]) -> str:
    return os.path.splitext(filename or "")[1].lower()


def detect_file_type(filename: Optional[str], content_type: Optional[str]) -> Optional[str]:
    """Return ``pdf``, ``zip`` or ``ppt``, or None if neither signal is recognised."""
    mime = (content_type or "").split(";")[0].strip().lower()
    return ALLOWED_MIME_TYPES.get(mime) or ALLOWED_EXTENSIONS.get(file_extension(filename))


def validate_upload(
    filename: Optional[str],
    content_type: Optional[str],
    size: Optional[int],
    max_size: int = MAX_FILE_SIZE_BYTES,
) -> str:
    """
    Check size and type of an upload before anything is stored.

    A file is accepted when its MIME type OR its extension is on the allow-list;
    browsers frequently send an empty or generic MIME type for ZIP and PPTX.

    Returns the detected file type.
    """
    if size is not None and size > max_size:
        raise UploadValidationError(
            f"File is too large ({size / (1024 * 1024):.1f}MB). Maximum size is {max_size // (1024 * 1024)}MB",
            status_code=413,
        )

    if size == 0:
        raise UploadValidationError("File is empty")

    file_type = detect_file_type(filename, content_type)
    if file_type is None:
        raise UploadValidationError(
            f"Unsupported file type '{content_type or file_extension(filename) or 'unknown'}'. "
            "Allowed: PDF, ZIP, PPT, PPTX"
        )

    return file_type


def is_pdf(data: bytes) -> bool:
    return data[:4] == PDF_MAGIC


def unpack_document(data: bytes, file_type: str) -> bytes:
    """
    Return PDF bytes for a stored prospect file.

    ZIP archives are searched for their first PDF member. PowerPoint files
    must be exported to PDF before processing.
    """
    if file_type == "zip":
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                members = sorted(
                    name for name in archive.namelist()
                    if name.lower().endswith(".pdf") and not name.startswith("__MACOSX/")
                )
                if not members:
                    raise UploadValidationError("ZIP archive does not contain a PDF file")
                logger.info(f"Using {members[0]} from ZIP archive ({len(members)} PDF files found)")
                data = archive.read(members[0])
        except zipfile.BadZipFile:
            raise UploadValidationError("File is not a valid ZIP archive")

    elif file_type == "ppt":
        raise UploadValidationError("PowerPoint files must be exported to PDF before processing")

    if not is_pdf(data):
        raise UploadValidationError("File is not a valid PDF")

    return data
