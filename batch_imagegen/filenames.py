"""Destination file names for downloaded artifacts."""

import re
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

from .models import TaskResult


DEFAULT_TEMPLATE = "{task}_{index}_{timestamp}"

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*]')


def sanitize(name: str) -> str:
    """Replace characters that are not allowed in file names."""
    return _ILLEGAL_CHARS.sub("_", name)


def render_filename(template: str, result: TaskResult, task_name: Optional[str] = None,
                    now: Optional[datetime] = None) -> str:
    """Expand ``template`` for ``result``.

    Supported variables are ``{task}``, ``{index}``, ``{timestamp}``,
    ``{date}`` and ``{taskId}``. A ``.png`` extension is added unless the
    name already ends in ``.png`` or ``.jpg``.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = str(int(now.timestamp() * 1000))

    filename = template or DEFAULT_TEMPLATE
    filename = filename.replace("{task}", task_name or "batch")
    filename = filename.replace("{index}", result.id[-6:])
    filename = filename.replace("{timestamp}", timestamp)
    filename = filename.replace("{date}", now.strftime("%Y-%m-%d"))
    filename = filename.replace("{taskId}", result.task_item_id[-6:])

    filename = sanitize(filename)
    if not filename.lower().endswith((".png", ".jpg")):
        filename += ".png"
    return filename


def destination_path(filename: str, task_name: Optional[str] = None,
                     organize_by_date: bool = False, organize_by_task: bool = False,
                     now: Optional[datetime] = None) -> str:
    """Prefix ``filename`` with the optional date and task subdirectories."""
    parts = []
    if organize_by_date:
        parts.append((now or datetime.now(timezone.utc)).strftime("%Y-%m-%d"))
    if organize_by_task and task_name:
        parts.append(sanitize(task_name))
    parts.append(filename)
    return str(PurePosixPath(*parts))
