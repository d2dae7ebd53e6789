"""
Paginated Result Container
"""

from dataclasses import dataclass, field
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class PaginatedResult(Generic[T]):
    """
    One page of results.

    `last_document_id` is an opaque cursor: pass it back as `start_after`
    to fetch the next page.
    """

    items: List[T] = field(default_factory=list)
    has_more: bool = False
    last_document_id: Optional[str] = None
