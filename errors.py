"""
Error taxonomy for the itinerary pipeline.

Two families live here:

  * ``ParseError`` and its subclasses are *values* produced by the
    structured-output extractor.  They are returned, not raised, so each
    stage can decide whether a bad LLM response is fatal or degradable.
  * ``PipelineError`` and its subclasses are raised to the caller-facing
    boundary (``main.py`` maps them onto HTTP status codes).
"""

from __future__ import annotations


class ParseError(Exception):
    """An LLM response that could not be turned into the requested shape."""

    kind = "parse"

    def __init__(self, reason: str, raw: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw or ""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason!r})"


class JSONParseError(ParseError):
    kind = "json"


class SchemaError(ParseError):
    """Valid JSON, wrong shape (missing keys, wrong field types)."""

    kind = "schema"


class CompletionError(ParseError):
    """The LLM call itself failed, so there was nothing to parse."""

    kind = "completion"


class PipelineError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(PipelineError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InvalidRequest(PipelineError):
    status_code = 400


class PrereqMissing(PipelineError):
    status_code = 404


class FatalParseError(PipelineError):
    """A load-bearing LLM stage (profile, itinerary) produced unusable output."""

    status_code = 502

    def __init__(self, stage: str, cause: ParseError):
        super().__init__(f"Failed to generate {stage}, please retry")
        self.stage = stage
        self.cause = cause


class PersistenceError(PipelineError):
    status_code = 500
