"""Filter, sort and paginate scan and report lists.

The pipeline is pure: it never touches the database and never mutates its
input. A `ListViewState` holds what the user picked (search text, image type,
sort column and direction, page size and page) and `run_pipeline` turns a list
of records plus that state into the page to show.

Order of operations:
    1. category filter (exact match, a missing type counts as "Unknown")
    2. search (case-insensitive substring over the derived text fields)
    3. stable sort (dates by timestamp, text by a locale-style collation)
    4. slice out the requested page

Unparsable or missing dates sort as the epoch (timestamp 0) rather than being
special-cased.
"""

import math
import unicodedata
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, List, Optional, Sequence, Tuple

from config import DEFAULT_PAGE_SIZE
from formatting import (
    DateLike,
    file_name_from_url,
    format_date,
    format_doctor_name,
    timestamp_of,
)

ALL_CATEGORIES = "all"
UNKNOWN_CATEGORY = "Unknown"


class SortField(str, Enum):
    DATE = "date"
    IMAGE_TYPE = "image_type"
    FILE_NAME = "file_name"
    IDENTIFIER = "id"
    DOCTOR_NAME = "doctor_name"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"

    def flipped(self) -> "SortDirection":
        return SortDirection.ASC if self is SortDirection.DESC else SortDirection.DESC


# Changing any of these sends the view back to page 1
RESETTING_FIELDS = ("search_term", "category_filter", "sort_field", "sort_direction", "page_size")


@dataclass(frozen=True)
class ListViewState:
    search_term: str = ""
    category_filter: str = ALL_CATEGORIES
    sort_field: Optional[SortField] = None
    sort_direction: SortDirection = SortDirection.DESC
    page_size: int = DEFAULT_PAGE_SIZE
    page_number: int = 1

    def __post_init__(self):
        if self.page_size < 1:
            raise ValueError("page_size must be a positive integer")
        if self.page_number < 1:
            raise ValueError("page_number must be a positive integer")

    def update(self, **changes) -> "ListViewState":
        """Return a new state; any filter, sort or page-size change resets to page 1."""
        new_state = replace(self, **changes)
        if any(getattr(new_state, name) != getattr(self, name) for name in RESETTING_FIELDS):
            new_state = replace(new_state, page_number=1)
        return new_state

    def toggle_sort(self, sort_field: SortField) -> "ListViewState":
        """Same column flips direction; a new column starts descending."""
        if sort_field == self.sort_field:
            return self.update(sort_direction=self.sort_direction.flipped())
        return self.update(sort_field=sort_field, sort_direction=SortDirection.DESC)

    def go_to_page(self, page_number: int) -> "ListViewState":
        return replace(self, page_number=page_number)

    def clear_filters(self) -> "ListViewState":
        return self.update(search_term="", category_filter=ALL_CATEGORIES)


@dataclass(frozen=True)
class ItemFields:
    """How to read the sortable and searchable values of one kind of record."""

    date: Callable[[Any], DateLike]
    identifier: Callable[[Any], Any]
    url: Callable[[Any], Optional[str]]
    category: Optional[Callable[[Any], Optional[str]]] = None
    doctor_name: Optional[Callable[[Any], Optional[str]]] = None
    searchable: Tuple[SortField, ...] = ()

    def supports(self, sort_field: SortField) -> bool:
        if sort_field is SortField.IMAGE_TYPE:
            return self.category is not None
        if sort_field is SortField.DOCTOR_NAME:
            return self.doctor_name is not None
        return True

    def category_of(self, item) -> str:
        return (self.category(item) if self.category else None) or UNKNOWN_CATEGORY

    def text_of(self, sort_field: SortField, item) -> str:
        if sort_field is SortField.DATE:
            return format_date(self.date(item))
        if sort_field is SortField.IMAGE_TYPE:
            return self.category(item) or ""
        if sort_field is SortField.FILE_NAME:
            return file_name_from_url(self.url(item))
        if sort_field is SortField.IDENTIFIER:
            value = self.identifier(item)
            return "" if value is None else str(value)
        return format_doctor_name(self.doctor_name(item))

    def search_texts(self, item) -> List[str]:
        return [self.text_of(name, item) for name in self.searchable]


SCAN_FIELDS = ItemFields(
    date=lambda scan: scan.date,
    identifier=lambda scan: scan.image_id,
    url=lambda scan: scan.image_url,
    category=lambda scan: scan.image_type,
    searchable=(SortField.IMAGE_TYPE, SortField.FILE_NAME, SortField.DATE),
)

REPORT_FIELDS = ItemFields(
    date=lambda report: report.scan_date,
    identifier=lambda report: report.report_id,
    url=lambda report: report.report_url,
    doctor_name=lambda report: report.doctor_name,
    searchable=(SortField.IDENTIFIER, SortField.FILE_NAME, SortField.DATE, SortField.DOCTOR_NAME),
)


@dataclass
class ListPage:
    items: List[Any]
    total_items: int
    total_filtered: int
    total_pages: int
    page_number: int
    page_size: int
    categories: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """Nothing stored at all."""
        return self.total_items == 0

    @property
    def no_results(self) -> bool:
        """Records exist but the current search/filter matches none of them."""
        return self.total_items > 0 and self.total_filtered == 0


# ------------------------
# Comparison
# ------------------------
def _collation_key(text: str):
    stripped = "".join(c for c in unicodedata.normalize("NFKD", text) if not unicodedata.combining(c))
    # accents and case only break ties; lowercase sorts before uppercase
    return (stripped.casefold(), text.swapcase())


def locale_compare(a: str, b: str) -> int:
    ka, kb = _collation_key(a), _collation_key(b)
    return (ka > kb) - (ka < kb)


def _compare(sort_field: SortField, fields: ItemFields) -> Callable[[Any, Any], int]:
    if sort_field is SortField.DATE:
        def compare(a, b):
            ta, tb = timestamp_of(fields.date(a)), timestamp_of(fields.date(b))
            return (ta > tb) - (ta < tb)
        return compare

    if sort_field is SortField.IDENTIFIER:
        def compare(a, b):
            ia, ib = fields.identifier(a), fields.identifier(b)
            if isinstance(ia, int) and isinstance(ib, int):
                return (ia > ib) - (ia < ib)
            return locale_compare(fields.text_of(sort_field, a), fields.text_of(sort_field, b))
        return compare

    def compare(a, b):
        return locale_compare(fields.text_of(sort_field, a), fields.text_of(sort_field, b))
    return compare


# ------------------------
# Pipeline stages
# ------------------------
def category_options(items: Sequence, fields: ItemFields) -> List[str]:
    """The filter choices: the sentinel first, then each type in first-seen order."""
    options = [ALL_CATEGORIES]
    for item in items:
        category = fields.category_of(item)
        if category not in options:
            options.append(category)
    return options


def filter_items(items: Sequence, state: ListViewState, fields: ItemFields) -> List:
    result = list(items)
    if state.category_filter != ALL_CATEGORIES:
        result = [item for item in result if fields.category_of(item) == state.category_filter]
    if state.search_term:
        term = state.search_term.lower()
        result = [
            item for item in result
            if any(term in text.lower() for text in fields.search_texts(item))
        ]
    return result


def sort_items(items: Sequence, sort_field: Optional[SortField], direction: SortDirection,
               fields: ItemFields) -> List:
    if sort_field is None:
        return list(items)
    if not fields.supports(sort_field):
        raise ValueError(f"Cannot sort this list by {sort_field.value}")
    compare = _compare(sort_field, fields)
    if direction is SortDirection.DESC:
        ascending = compare

        def compare(a, b):
            return -ascending(a, b)
    # sorted() is stable, so equal keys keep their input order in both directions
    return sorted(items, key=cmp_to_key(compare))


def total_pages(count: int, page_size: int) -> int:
    return math.ceil(count / page_size)


def paginate(items: Sequence, page_size: int, page_number: int) -> List:
    start = (page_number - 1) * page_size
    return list(items[start:start + page_size])


def run_pipeline(items: Sequence, state: ListViewState, fields: ItemFields) -> ListPage:
    filtered = filter_items(items, state, fields)
    ordered = sort_items(filtered, state.sort_field, state.sort_direction, fields)
    return ListPage(
        items=paginate(ordered, state.page_size, state.page_number),
        total_items=len(items),
        total_filtered=len(ordered),
        total_pages=total_pages(len(ordered), state.page_size),
        page_number=state.page_number,
        page_size=state.page_size,
        categories=category_options(items, fields) if fields.category else [],
    )
