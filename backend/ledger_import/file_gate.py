"""
Upload checks applied before any parsing happens.

The gate accepts CSV, PDF and image uploads; only CSV is parsed further; the
other types are turned away one step later with a fixed message.
"""

import logging
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 5 * 1024 * 1024

SUPPORTED_EXTENSIONS = ("csv", "pdf", "png", "jpg", "jpeg")

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg")

VALIDATION_ERRORS = {
    "INVALID_EXTENSION": "Please select a supported file (CSV, PDF, PNG, or JPG)",
    "FILE_TOO_LARGE": "File size exceeds 5MB limit. Please select a smaller file.",
    "EMPTY_FILE": "The selected file is empty. Please select a valid file.",
    "NO_FILE": "No file selected",
}


class UploadCandidate(BaseModel):
    """A file chosen by the user, held in memory until the session closes."""

    name: str
    size: int
    content: bytes = b""

    @classmethod
    def from_bytes(cls, name: str, content: bytes) -> "UploadCandidate":
        return cls(name=name, size=len(content), content=content)

    @property
    def extension(self) -> str:
        return (self.name or "").lower().rsplit(".", 1)[-1]

    async def read_text(self) -> str:
        """Decode the upload as UTF-8, tolerating a byte-order mark."""
        return self.content.decode("utf-8-sig")


class FileValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    file_type: Optional[str] = None


def _reject(code: str) -> FileValidation:
    return FileValidation(valid=False, error=VALIDATION_ERRORS[code], error_code=code)


def validate_file(file: Optional[UploadCandidate]) -> FileValidation:
    """
    Validate an upload for supported extension and size.

    Args:
        file: The selected upload, or None when nothing was chosen

    Returns:
        FileValidation with the derived file type ("csv", "pdf" or "image")
    """
    if file is None:
        return _reject("NO_FILE")

    extension = file.extension
    if extension not in SUPPORTED_EXTENSIONS:
        logger.info("Rejected upload %r: unsupported extension", file.name)
        return _reject("INVALID_EXTENSION")

    if file.size > MAX_FILE_SIZE:
        logger.info("Rejected upload %r: %d bytes", file.name, file.size)
        return _reject("FILE_TOO_LARGE")

    if file.size == 0:
        return _reject("EMPTY_FILE")

    file_type = "csv"
    if extension == "pdf":
        file_type = "pdf"
    elif extension in IMAGE_EXTENSIONS:
        file_type = "image"

    return FileValidation(valid=True, file_type=file_type)


def unsupported_type_message(file_type: str) -> str:
    """User-facing message for uploads the gate accepts but nothing can parse yet."""
    label, source = ("PDF", "PDF documents") if file_type == "pdf" else ("Image", "images")
    return (
        f"{label} file detected. Automatic text extraction from {source} is coming soon. "
        "For now, please export your bank statement as a CSV file for best results."
    )
