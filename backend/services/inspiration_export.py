"""Export of inspiration records as markdown, JSON or plain text."""
import time
from datetime import datetime
from typing import Any, Dict, List

SEPARATOR = "=" * 50


def export_inspirations(inspirations: List[Dict[str, Any]], export_format: str = "markdown") -> Dict[str, Any]:
    """
    Render inspirations for download.

    Returns:
        Dict with data, filename and mimeType

    Raises:
        ValueError: If the format is not markdown, json or txt
    """
    stamp = int(time.time() * 1000)

    if export_format == "markdown":
        return {
            "data": "\n".join(_markdown_entry(i) for i in inspirations),
            "filename": f"inspirations-{stamp}.md",
            "mimeType": "text/markdown",
        }
    if export_format == "json":
        return {
            "data": inspirations,
            "filename": f"inspirations-{stamp}.json",
            "mimeType": "application/json",
        }
    if export_format == "txt":
        return {
            "data": "\n".join(_text_entry(i) for i in inspirations),
            "filename": f"inspirations-{stamp}.txt",
            "mimeType": "text/plain",
        }
    raise ValueError(f"Unsupported export format: {export_format}")


def _markdown_entry(inspiration: Dict[str, Any]) -> str:
    categories = " ".join(f"#{c}" for c in inspiration.get("categories") or [])
    tags = " ".join(f"#{t}" for t in inspiration.get("tags") or [])

    return f"""# {inspiration.get('title', '')}

**Created**: {_format_date(inspiration.get('created_at'))}
**Categories**: {categories}
**Tags**: {tags}

## Summary
{inspiration.get('summary') or 'No summary'}

## Content
{inspiration.get('content', '')}

---
"""


def _text_entry(inspiration: Dict[str, Any]) -> str:
    return f"""Title: {inspiration.get('title', '')}
Created: {_format_date(inspiration.get('created_at'))}
Categories: {', '.join(inspiration.get('categories') or [])}
Tags: {', '.join(inspiration.get('tags') or [])}
Summary: {inspiration.get('summary') or 'No summary'}
Content: {inspiration.get('content', '')}

{SEPARATOR}
"""


def _format_date(value: Any) -> str:
    if not value:
        return ""
    try:
        return parse_timestamp(str(value)).date().isoformat()
    except ValueError:
        return str(value)


def parse_timestamp(timestamp_str: str) -> datetime:
    """
    Parse a timestamp string from Supabase.

    Supabase can return timestamps with varying microsecond precision
    (e.g. 2026-02-21T02:08:26.18976+00:00), which fromisoformat() does not
    always accept. Microseconds are truncated or padded to 6 digits.
    """
    timestamp_str = timestamp_str.replace("Z", "+00:00")

    if "." in timestamp_str:
        head, tail = timestamp_str.split(".", 1)
        for sign in ("+", "-"):
            if sign in tail:
                microseconds, tz = tail.split(sign, 1)
                tail = f"{microseconds[:6].ljust(6, '0')}{sign}{tz}"
                break
        else:
            tail = tail[:6].ljust(6, "0")
        timestamp_str = f"{head}.{tail}"

    return datetime.fromisoformat(timestamp_str)
