"""
Query engine: translates a search into deterministic SQL pieces
(filter -> sort -> pagination) for the movies table.

Every sort order ends with `external_id ASC` so identical requests page
identically.
"""

import json
import math
from dataclasses import dataclass, field
from typing import List, Optional

from ..schemas.movie import Pagination, SearchQuery, SortKey

MAX_SEARCH_TOKENS = 8

# English stop words ignored by text matching, unless the query has nothing else
STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
    "is", "it", "of", "on", "or", "the", "to", "with",
})

ORDER_BY = {
    SortKey.RATING: "aggregate_rating DESC NULLS LAST, external_id ASC",
    SortKey.YEAR: "release_year DESC NULLS LAST, external_id ASC",
    SortKey.TITLE: "title ASC, external_id ASC",
    SortKey.POPULARITY: "popularity_score DESC, external_id ASC",
}


@dataclass(frozen=True)
class SearchCriteria:
    text: str
    year: Optional[int] = None
    genre: Optional[str] = None
    media_type: Optional[str] = None
    sort: SortKey = SortKey.RELEVANCE

    @classmethod
    def from_query(cls, query: SearchQuery) -> "SearchCriteria":
        media_type = query.media_type if query.media_type != "all" else None
        return cls(
            text=query.text,
            year=query.year,
            genre=query.genre,
            media_type=media_type,
            sort=query.sort,
        )


@dataclass
class SearchSql:
    where: str
    order_by: str
    where_params: List = field(default_factory=list)
    order_params: List = field(default_factory=list)

    @property
    def params(self) -> List:
        return self.where_params + self.order_params


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def tokenize(text: str) -> List[str]:
    seen = list(dict.fromkeys(token.lower() for token in text.split()))
    terms = [token for token in seen if token not in STOP_WORDS] or seen
    return terms[:MAX_SEARCH_TOKENS]


def build_search_sql(criteria: SearchCriteria) -> SearchSql:
    where_params: List = []

    def bind(value) -> str:
        where_params.append(value)
        return f"${len(where_params)}"

    clauses = []
    # any token hitting the title or the plot is a match
    token_hits = []
    for token in tokenize(criteria.text):
        placeholder = bind(f"%{escape_like(token)}%")
        token_hits.append(f"(title ILIKE {placeholder} OR plot ILIKE {placeholder})")
    if token_hits:
        clauses.append("(" + " OR ".join(token_hits) + ")")
    if criteria.year is not None:
        clauses.append(f"release_year = {bind(criteria.year)}")
    if criteria.genre:
        clauses.append(f"genres @> {bind(json.dumps([criteria.genre]))}::jsonb")
    if criteria.media_type:
        clauses.append(f"media_type = {bind(criteria.media_type)}")

    where = " AND ".join(clauses) if clauses else "TRUE"

    if criteria.sort == SortKey.RELEVANCE:
        offset = len(where_params)
        phrase = escape_like(criteria.text)
        order_params = [criteria.text, f"{phrase}%", f"%{phrase}%"]
        # more matched tokens first, then how closely the title matches the phrase
        matched = " + ".join(f"(CASE WHEN {hit} THEN 1 ELSE 0 END)" for hit in token_hits) or "0"
        order_by = (
            f"({matched}) DESC, "
            "CASE"
            f" WHEN lower(title) = lower(${offset + 1}::text) THEN 0"
            f" WHEN title ILIKE ${offset + 2} THEN 1"
            f" WHEN title ILIKE ${offset + 3} THEN 2"
            " ELSE 3 END ASC, external_id ASC"
        )
        return SearchSql(where, order_by, where_params, order_params)

    return SearchSql(where, ORDER_BY[criteria.sort], where_params, [])


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        limit = default
    return max(1, min(limit, maximum))


def clamp_page(page: Optional[int]) -> int:
    return max(1, page or 1)


def skip_for(page: int, limit: int) -> int:
    return (page - 1) * limit


def should_backfill(page: int, limit: int, returned: int) -> bool:
    """
    Backfill when the page came back empty, or when the first page holds
    fewer rows than requested (the local index is likely incomplete for
    this query). Short pages beyond the first are the normal tail.
    """
    if returned == 0:
        return True
    return page == 1 and returned < limit


def paginate(total_count: int, page: int, limit: int) -> Pagination:
    total_pages = math.ceil(total_count / limit) if total_count else 0
    return Pagination(
        current_page=page,
        total_pages=total_pages,
        total_count=total_count,
        has_next=page < total_pages,
        has_prev=page > 1,
        limit=limit,
    )
