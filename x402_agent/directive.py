"""
Tool-call directives embedded in model output.

The model is asked to answer with {"tool": ..., "args": {...}} when it wants
to run a tool, but it may wrap that in prose or code fences. Every top-level JSON
object in the text is tried in order against a strict schema; the first
match wins. Anything else means "no directive" and the text is a plain reply.
"""

import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError, field_validator

logger = logging.getLogger("Directive")

_decoder = json.JSONDecoder()


class ToolCallDirective(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    tool: StrictStr
    args: Dict[str, Any]

    @field_validator("tool")
    @classmethod
    def _tool_not_blank(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("tool must not be empty")
        return value

    def to_dict(self):
        return {"tool": self.tool, "args": dict(self.args)}


def coerce_directive(candidate) -> Optional[ToolCallDirective]:
    """Validate an already-decoded object (e.g. a resubmitted tool_call)."""
    if not isinstance(candidate, dict):
        return None
    try:
        return ToolCallDirective.model_validate(candidate)
    except ValidationError:
        return None


def iter_json_objects(text):
    """Top-level JSON objects in `text`; objects nested inside them are not yielded."""
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = _decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        pos = text.find("{", end)


def parse_directive(text) -> Optional[ToolCallDirective]:
    if not text or "{" not in text:
        return None
    for obj in iter_json_objects(text):
        directive = coerce_directive(obj)
        if directive is not None:
            return directive
    logger.debug("[Directive] JSON-looking text without a valid {tool, args} object")
    return None
