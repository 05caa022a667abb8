"""Page/limit handling shared by every list endpoint."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config import settings


@dataclass(frozen=True)
class PageWindow:
    page: int
    limit: int
    offset: int


def page_window(page: Optional[int] = 1, limit: Optional[int] = None) -> PageWindow:
    """Turn a page/limit request into an offset window, clamping bad input instead of failing."""
    page = max(page or 1, 1)
    if limit is None:
        limit = settings.default_page_size
    limit = min(max(limit, 1), settings.max_page_size)
    return PageWindow(page=page, limit=limit, offset=(page - 1) * limit)


def paginate(data: List[Any], total: int, window: PageWindow) -> Dict[str, Any]:
    """Build the response envelope for one page of results."""
    return {
        "data": data,
        "total": total,
        "page": window.page,
        "limit": window.limit,
        "total_pages": math.ceil(total / window.limit) if total else 0,
    }
