"""End-of-pagination detection across the response conventions RD Station uses.

Checked in order, first hit wins:
1. An explicit next-page / next-cursor field in the body
2. A ``Link: <...>; rel="next"`` response header
3. An explicit boolean has-more field
4. A total-pages count (``page < total`` means more)
5. Fewer items received than requested means the end
"""

from __future__ import annotations

import re
from typing import Any

from src.crm_sync.sync.normalizers import as_dict, clamp_int, safe_str
from src.crm_sync.sync.schemas import PageResult

_NEXT_KEYS = ["next_page", "nextPage", "next"]
_HAS_MORE_KEYS = ["has_more", "hasMore"]
_TOTAL_PAGES_KEYS = ["total_pages", "totalPages", "pages", "total_paginas", "quantidade_de_paginas"]
_LINK_NEXT = re.compile(r"<([^>]+)>;\s*rel=\"?next\"?", re.IGNORECASE)


def extract_items(payload: Any, resource: str) -> list[Any]:
    """Return the record list of a page body.

    Looks under [resource, items, results, data] at the root, then under a
    ``data`` object, then accepts ``data`` itself when it is a list.
    """
    keys = [resource, "items", "results", "data"]
    root = as_dict(payload)
    for key in keys:
        if isinstance(root.get(key), list):
            return root[key]
    data = as_dict(root.get("data"))
    for key in keys:
        if isinstance(data.get(key), list):
            return data[key]
    return []


def parse_link_header_next(link_header: str | None) -> str:
    match = _LINK_NEXT.search(safe_str(link_header))
    if not match:
        return ""
    return safe_str(match.group(1))


def _next_candidates(payload: dict[str, Any]) -> list[Any]:
    data = as_dict(payload.get("data"))
    meta = as_dict(payload.get("meta"))
    pagination = as_dict(payload.get("pagination"))
    links = as_dict(payload.get("links"))
    return [
        payload.get("next_page"),
        payload.get("nextPage"),
        data.get("next_page"),
        data.get("nextPage"),
        *(meta.get(key) for key in _NEXT_KEYS),
        *(pagination.get(key) for key in _NEXT_KEYS),
        links.get("next"),
    ]


def _first_total_pages(sources: list[dict[str, Any]]) -> int:
    for source in sources:
        for key in _TOTAL_PAGES_KEYS:
            total = clamp_int(source.get(key), 0, 1_000_000, -1)
            if total >= 0:
                return total
    return -1


def detect_next_page(
    payload: Any,
    page: int,
    records_per_page: int,
    received: int,
    link_header: str | None = None,
) -> PageResult:
    """Decide whether another page follows.

    Args:
        payload: Decoded response body.
        page: Page number that was requested.
        records_per_page: Effective page size that was requested.
        received: Number of items extracted from the body.
        link_header: Raw ``Link`` response header, if any.

    Returns:
        PageResult without items (has_next, next_page, next_cursor).
    """
    root = as_dict(payload)
    sources = [
        root,
        as_dict(root.get("data")),
        as_dict(root.get("meta")),
        as_dict(root.get("pagination")),
    ]

    for candidate in _next_candidates(root):
        if isinstance(candidate, (dict, list, bool)):
            continue
        token = safe_str(candidate)
        if token:
            return PageResult(has_next=True, next_page=page + 1, next_cursor=token)

    header_next = parse_link_header_next(link_header)
    if header_next:
        return PageResult(has_next=True, next_page=page + 1, next_cursor=header_next)

    for source in sources:
        for key in _HAS_MORE_KEYS:
            flag = source.get(key)
            if isinstance(flag, bool):
                if flag:
                    return PageResult(has_next=True, next_page=page + 1)
                return PageResult(has_next=False, next_page=page)

    total_pages = _first_total_pages(sources)
    if total_pages > 0:
        return PageResult(has_next=page < total_pages, next_page=page + 1)

    if received <= 0 or received < records_per_page:
        return PageResult(has_next=False, next_page=page)
    return PageResult(has_next=True, next_page=page + 1)
