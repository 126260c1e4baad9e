"""
Programme Governance Engine
Blueprint registry.
"""

from flask import request


def paginate_items(items, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to an already-ordered list.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (page, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total
