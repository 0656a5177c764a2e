"""
Human-readable rendering of tool results.

Results are inspected through pydantic models; anything that doesn't fit a
known shape falls through to the next strategy, and finally to None so the
caller can suggest --json.
"""

import json
import math
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ToolContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[str] = None
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = Field(None, alias="mimeType")
    url: Optional[str] = None


class ToolCallResult(BaseModel):
    content: list[ToolContent] = Field(default_factory=list)


class NowTimeInfoData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int = 0
    date_time: Optional[str] = Field(None, alias="datetime")
    formatted: Optional[str] = None
    date: Optional[str] = None
    year: int = 0
    month: int = 0
    day: int = 0
    day_of_week: Optional[str] = Field(None, alias="dayOfWeek")
    timezone: Optional[str] = None
    offset: Optional[str] = None
    utc: Optional[str] = None


class NowTimeInfo(BaseModel):
    """Payload of the now-time-info tool."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    code: int = 0
    message: Optional[str] = None
    date_time: Optional[str] = Field(None, alias="datetime")
    trace_id: Optional[str] = Field(None, alias="traceId")
    data: NowTimeInfoData = Field(default_factory=NowTimeInfoData)


def _validate(model, value):
    try:
        return model.model_validate(value)
    except ValidationError:
        return None


def _clean(value):
    return (value or "").strip()


def _format_number(value):
    """
    Format a JSON number as a float64 would print with %v: shortest digits,
    exponent form below 1e-4 or from 1e+06 up.
    """
    try:
        value = float(value)
    except OverflowError:
        return str(value)
    if not math.isfinite(value):
        return str(value)
    shortest = Decimal(repr(value)).normalize()
    digits = len(shortest.as_tuple().digits)
    exponent = shortest.adjusted()
    if exponent < -4 or exponent >= 6:
        return format(value, f".{digits - 1}e")
    return format(value, f".{max(digits - 1 - exponent, 0)}f")


def _format_scalar(value):
    if isinstance(value, bool):
        return json.dumps(value)
    return _format_number(value)


def _render_content(item: ToolContent) -> Optional[str]:
    if _clean(item.type).lower() == "image":
        if _clean(item.url):
            return f"[image] {item.url}"
        if _clean(item.mime_type):
            return f"[image] {item.mime_type}"
        if _clean(item.data):
            return "[image]"
        return None
    if _clean(item.text):
        return item.text
    return None


def extract_json_from_text(value: str) -> Optional[Any]:
    """Return the first JSON object embedded in free text, if any."""
    decoder = json.JSONDecoder()
    start = 0
    while (index := value.find("{", start)) != -1:
        try:
            obj, _ = decoder.raw_decode(value, index)
            return obj
        except json.JSONDecodeError:
            start = index + 1
    return None


def parse_now_time_info(result: Any) -> Optional[NowTimeInfo]:
    """
    Find the now-time-info payload either as the result itself or embedded in
    the text content of a tool result. Only payloads with data.date count.
    """
    info = _validate(NowTimeInfo, result)
    if info is not None and info.data.date:
        return info

    tool_result = _validate(ToolCallResult, result)
    if tool_result is None:
        return None

    for item in tool_result.content:
        text = _clean(item.text)
        if not text:
            continue
        raw = extract_json_from_text(text)
        if raw is None:
            continue
        info = _validate(NowTimeInfo, raw)
        if info is not None and info.data.date:
            return info
    return None


def render_now_time_info(result: Any) -> Optional[str]:
    info = parse_now_time_info(result)
    if info is None:
        return None

    time_label = _clean(info.data.formatted) or _clean(info.date_time) or _clean(info.data.date_time)
    tz_label = _clean(info.data.timezone) or _clean(info.data.offset)

    lines = []
    if time_label:
        if tz_label:
            lines.append(f"Server time: {time_label} ({tz_label})")
        else:
            lines.append(f"Server time: {time_label}")

    if info.data.date:
        if info.data.day_of_week:
            lines.append(f"Date: {info.data.date} ({info.data.day_of_week})")
        else:
            lines.append(f"Date: {info.data.date}")

    if info.data.utc:
        lines.append(f"UTC: {info.data.utc}")

    if info.data.timestamp:
        lines.append(f"Timestamp: {info.data.timestamp}")

    if info.trace_id:
        lines.append(f"Trace ID: {info.trace_id}")

    return "\n".join(lines) if lines else None


def render_human_output(tool_name: str, result: Any) -> Optional[str]:
    """
    Render a raw tool result for a terminal, or return None when there is
    nothing sensible to show.
    """
    if tool_name.lower() == "now-time-info":
        if output := render_now_time_info(result):
            return output

    tool_result = _validate(ToolCallResult, result)
    if tool_result is not None and tool_result.content:
        parts = [part for item in tool_result.content if (part := _render_content(item))]
        if parts:
            return "\n\n".join(parts)

    if isinstance(result, str) and result.strip():
        return result

    if isinstance(result, dict):
        lines = []
        for key in sorted(result):
            value = result[key]
            if isinstance(value, str):
                if value.strip():
                    lines.append(f"{key}: {value}")
            elif isinstance(value, (bool, int, float)):
                lines.append(f"{key}: {_format_scalar(value)}")
        if lines:
            return "\n".join(lines)

    return None
