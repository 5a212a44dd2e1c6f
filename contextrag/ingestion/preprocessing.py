from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


logger = logging.getLogger(__name__)

# Leading YAML block delimited by "---" lines; only honored at the very start of the document.
_FRONT_MATTER_RE = re.compile(r"\A\ufeff?---[ \t]*\r?\n(.*?)(?:\r?\n)?^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)


class FrontMatter(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str | None = None
    description: str | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def as_metadata(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        return {key: _json_safe(value) for key, value in data.items()}


def _json_safe(value: Any) -> Any:
    # YAML yields date/datetime objects for unquoted timestamps.
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Return the raw front matter block (or None) and the remaining body."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), text[match.end():]


def extract_front_matter(text: str) -> FrontMatter:
    raw, _ = split_front_matter(text)
    if raw is None or not raw.strip():
        return FrontMatter()
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        # Malformed front matter is treated as absent; the body is still ingestible.
        logger.warning("front_matter_parse_failed error=%s", exc.__class__.__name__)
        return FrontMatter()
    if not isinstance(data, dict):
        return FrontMatter()
    return FrontMatter.model_validate({str(key): value for key, value in data.items()})
