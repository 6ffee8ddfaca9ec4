"""Product retrieval as an ordered list of search strategies.

The first strategy that returns anything wins. A strategy that fails (as
opposed to finding nothing) aborts the whole retrieval with RetrievalError.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from app.logging_config import get_logger
from app.services.catalog_service import CatalogService, ProductMatch, SupabaseError
from app.services.conversation_meta import HistoryMessage, latest_product_ids

logger = get_logger("retrieval_service")

DEFAULT_MATCH_COUNT = 5
MAX_MATCH_COUNT = 20


class RetrievalError(Exception):
    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


@dataclass
class RetrievalRequest:
    query_text: str
    vector: Optional[str]
    limit: int = DEFAULT_MATCH_COUNT
    articles: list[str] = field(default_factory=list)


@dataclass
class RetrievalOutcome:
    products: list[ProductMatch]
    strategy: Optional[str] = None


Strategy = Callable[[RetrievalRequest], list[ProductMatch]]


def clamp_match_count(value: Optional[int]) -> int:
    if not value or value <= 0:
        return DEFAULT_MATCH_COUNT
    return min(value, MAX_MATCH_COUNT)


def _unique_articles(articles: list[str]) -> list[str]:
    seen = set()
    out = []
    for article in articles:
        key = article.strip().upper()
        if key and key not in seen:
            seen.add(key)
            out.append(key)
    return out


class RetrievalService:
    def __init__(self, catalog: CatalogService):
        self.catalog = catalog

    def strategies(self, request: RetrievalRequest) -> list[tuple[str, Strategy]]:
        chain: list[tuple[str, Strategy]] = []
        if request.articles:
            chain.append(("article_exact", self.search_by_articles))
        chain.append(("hybrid", self.search_hybrid))
        if request.query_text.strip():
            chain.append(("plain_listing", self.search_plain_listing))
        return chain

    def retrieve(self, request: RetrievalRequest) -> RetrievalOutcome:
        for name, strategy in self.strategies(request):
            try:
                products = strategy(request)
            except RetrievalError:
                raise
            except SupabaseError as e:
                raise RetrievalError(name, str(e)) from e
            logger.info(
                "Retrieval strategy finished",
                extra={"context": {"strategy": name, "count": len(products)}},
            )
            if products:
                return RetrievalOutcome(products=products[: request.limit], strategy=name)
        return RetrievalOutcome(products=[])

    def search_by_articles(self, request: RetrievalRequest) -> list[ProductMatch]:
        """Two passes: one product per article first, then fill up to the limit."""
        articles = _unique_articles(request.articles)
        found_by_article: dict[str, list[ProductMatch]] = {}
        for article in articles:
            found_by_article[article] = self.catalog.search_by_article(article, request.limit)

        seen: set[int] = set()
        out: list[ProductMatch] = []

        for article in articles:
            if len(out) >= request.limit:
                break
            for product in found_by_article[article]:
                if product.id not in seen:
                    seen.add(product.id)
                    out.append(product)
                    break

        for article in articles:
            for product in found_by_article[article]:
                if len(out) >= request.limit:
                    return out
                if product.id not in seen:
                    seen.add(product.id)
                    out.append(product)
        return out

    def search_hybrid(self, request: RetrievalRequest) -> list[ProductMatch]:
        try:
            return self.catalog.search_products_hybrid(request.query_text, request.vector, request.limit)
        except SupabaseError as e:
            if request.vector is None:
                raise RetrievalError("hybrid", str(e)) from e
            logger.warning(f"Hybrid search failed, retrying text-only: {e}")
            try:
                return self.catalog.search_products_hybrid(request.query_text, None, request.limit)
            except SupabaseError as text_error:
                raise RetrievalError("hybrid", f"{e}; text-only failed: {text_error}") from text_error

    def search_plain_listing(self, request: RetrievalRequest) -> list[ProductMatch]:
        return self.catalog.list_products(request.query_text, request.limit)

    def reuse_from_history(self, history: list[HistoryMessage]) -> list[ProductMatch]:
        ids = latest_product_ids(history)
        if not ids:
            return []
        return self.catalog.products_by_ids(ids)
