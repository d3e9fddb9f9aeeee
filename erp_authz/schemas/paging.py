from __future__ import annotations

# Upper bound for 1-based `page` inputs; keeps `(page - 1) * limit` bindable as an offset.
MAX_PAGE = 100_000
