from __future__ import annotations

from enum import StrEnum


class SpanStatus(StrEnum):
    OK = "ok"
    ERROR = "error"


class SpanOperation(StrEnum):
    # Common operation tags; any free-form string is accepted by Span.
    FUNCTION = "function"
    HTTP_SERVER = "http.server"
    HTTP_CLIENT = "http.client"
    DB_QUERY = "db.query"
    CALCULATION = "calculation"
    PROCESSING = "processing"
    CUSTOM = "custom.operation"


# Attribute values are restricted to these scalar types.
ATTRIBUTE_VALUE_TYPES: tuple[type, ...] = (str, bool, int, float)

REQUEST_ID_HEADER = "x-request-id"
TRACE_ID_HEADER = "x-trace-id"
