"""
导出与过滤

对捕获的行序列做纯转换，不修改输入：
- 时间范围: 闭区间，单位毫秒
- 过滤: '#' 开头为正则（忽略大小写），否则为忽略大小写的子串匹配
- 格式: text (txt) / csv / json
"""

import re
import json
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .exceptions import FilterSyntaxError
from .line import DIRECTION_TX, CapturedLine, now_ms

CONTENT_TYPES = {
    "txt": "text/plain",
    "csv": "text/csv",
    "json": "application/json",
}

CSV_HEADER = "Timestamp,Direction,Data"

GLYPH_TX = "▶"
GLYPH_RX = "◀"


def normalize_format(fmt: Optional[str]) -> str:
    """text/txt/未知格式 -> txt"""
    fmt = (fmt or "txt").lower()
    if fmt in ("csv", "json"):
        return fmt
    return "txt"


def build_matcher(filter_text: Optional[str]) -> Optional[Callable[[str], bool]]:
    """
    根据过滤表达式构造匹配函数

    Raises:
        FilterSyntaxError: 正则表达式非法
    """
    if not filter_text:
        return None

    if filter_text.startswith("#"):
        try:
            pattern = re.compile(filter_text[1:], re.IGNORECASE)
        except re.error as e:
            raise FilterSyntaxError(f"Invalid regex filter: {e}") from e
        return lambda data: pattern.search(data) is not None

    term = filter_text.lower()
    return lambda data: term in data.lower()


def filter_lines(lines: Sequence[CapturedLine], filter_text: Optional[str] = None,
                 start_time: Optional[int] = None, end_time: Optional[int] = None) -> List[CapturedLine]:
    matcher = build_matcher(filter_text)
    result = []
    for line in lines:
        if start_time is not None and line.timestamp < start_time:
            continue
        if end_time is not None and line.timestamp > end_time:
            continue
        if matcher is not None and not matcher(line.data or ""):
            continue
        result.append(line)
    return result


def format_timestamp(timestamp_ms: int) -> str:
    """毫秒时间戳 -> ISO-8601 (UTC, 毫秒精度)"""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_json(lines: Sequence[CapturedLine]) -> str:
    return json.dumps([line.to_dict() for line in lines], indent=2, ensure_ascii=False)


def to_csv(lines: Sequence[CapturedLine]) -> str:
    rows = [CSV_HEADER]
    for line in lines:
        data = (line.data or "").replace('"', '""')
        rows.append(f'{line.timestamp},{line.direction},"{data}"')
    return "\n".join(rows)


def to_text(lines: Sequence[CapturedLine]) -> str:
    return "\n".join(
        f"[{format_timestamp(line.timestamp)}] "
        f"{GLYPH_TX if line.direction == DIRECTION_TX else GLYPH_RX} {line.data}"
        for line in lines
    )


def export_lines(lines: Sequence[CapturedLine], fmt: str = "txt", filter_text: Optional[str] = None,
                 start_time: Optional[int] = None, end_time: Optional[int] = None) -> Tuple[bytes, str]:
    """
    导出捕获的行

    Returns:
        (UTF-8 编码的内容, content type)

    Raises:
        FilterSyntaxError: 正则过滤表达式非法
    """
    fmt = normalize_format(fmt)
    selected = filter_lines(lines, filter_text, start_time, end_time)

    if fmt == "json":
        output = to_json(selected)
    elif fmt == "csv":
        output = to_csv(selected)
    else:
        output = to_text(selected)

    return output.encode("utf-8"), CONTENT_TYPES[fmt]


def export_filename(channel_id: str, fmt: str = "txt", timestamp: Optional[int] = None) -> str:
    """serial-log-<id>-<ms>.<ext>，id 中只保留字母和数字"""
    safe_id = re.sub(r"[^a-zA-Z0-9]", "", channel_id) or "unknown"
    if timestamp is None:
        timestamp = now_ms()
    return f"serial-log-{safe_id}-{timestamp}.{normalize_format(fmt)}"
