"""
Error taxonomy shared by the query layer and the GeoServices surface.

Every error carries the HTTP status used in the Esri error envelope:
    {"error": {"code": 404, "message": "...", "details": []}}
"""

from typing import Optional


class GeoServicesError(Exception):
    """Base class for errors that are rendered as an Esri error response."""

    code = 500

    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class NotFound(GeoServicesError):
    """Layer, relationship or schema does not exist."""

    code = 404


class BadRequest(GeoServicesError):
    code = 400


class SchemaTimeout(GeoServicesError):
    """Schema introspection exceeded its time budget."""

    code = 500


class QueryTimeout(GeoServicesError):
    """Feature query exceeded its time budget."""

    code = 500


class QueryExecutionError(GeoServicesError):
    """Any other database-level failure (syntax, constraint, connectivity)."""

    code = 500


class InternalError(GeoServicesError):
    code = 500
