from abc import ABC, abstractmethod
from typing import List, Optional

from ...schemas.report import SearchResult


class BaseSearchConnector(ABC):
    """A keyword web-search provider returning normalised results."""

    name: str

    @abstractmethod
    async def search(
        self,
        query: str,
        *,
        depth: str = "advanced",
        max_results: int = 5,
        exclude_domains: Optional[List[str]] = None,
        days: Optional[int] = None,
    ) -> List[SearchResult]:
        ...
