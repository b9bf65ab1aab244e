from typing import Optional

from clinidocs.documents.models import UploadWarnings


class DocumentRequestError(Exception):
    """Request rejected; rendered as {"error": message, "warnings": {...}}"""

    def __init__(self, status_code: int, message: str, warnings: Optional[UploadWarnings] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.warnings = warnings

    def to_json(self) -> dict:
        body = {"error": self.message}
        if self.warnings is not None:
            body["warnings"] = self.warnings.to_json()
        return body


class MalformedUploadError(ValueError):
    """Multipart framing could not be parsed"""
