"""Catalog and knowledge lookups against the Supabase REST API."""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("catalog_service")

PRODUCT_COLUMNS = "id,name_raw,price,brand_name,color_name,series_name,product_type"
ARTICLE_COLUMNS = PRODUCT_COLUMNS + ",article"
HYBRID_MATCH_THRESHOLD = 0.2


class SupabaseError(Exception):
    def __init__(self, status_code: Optional[int], message: str):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ProductMatch:
    id: int
    content: str
    metadata: dict = field(default_factory=dict)
    similarity: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata,
            "similarity": self.similarity,
        }


@dataclass
class KnowledgeMatch:
    id: Any
    content: str
    metadata: dict = field(default_factory=dict)
    similarity: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata,
            "similarity": self.similarity,
        }


def _format_price(price: Any) -> str:
    if isinstance(price, float) and price.is_integer():
        return str(int(price))
    return str(price)


def product_from_search_row(row: dict) -> ProductMatch:
    """Row of the search_products RPC."""
    name = row.get("name_raw") or ""
    price = row.get("price")
    content = name if price is None else f"{name} | Цена: {_format_price(price)}"
    meta: dict[str, Any] = {"name": name}
    for source, target in (
        ("price", "price"),
        ("image_url", "image"),
        ("detected_brand", "brand"),
        ("detected_color", "color"),
        ("detected_series", "series"),
        ("product_type", "type"),
    ):
        if row.get(source) is not None:
            meta[target] = row[source]
    return ProductMatch(
        id=int(row.get("id") or 0),
        content=content,
        metadata=meta,
        similarity=float(row.get("score") or 0.0),
    )


def product_from_listing_row(row: dict) -> ProductMatch:
    """Row of get_all_products or products_full."""
    name = row.get("name_raw") or ""
    brand = row.get("brand") or row.get("brand_name")
    price = row.get("price")
    content = name
    if brand:
        content += f" | Бренд: {brand}"
    if price is not None:
        content += f" | Цена: {_format_price(price)}"
    meta: dict[str, Any] = {"name": name}
    for source, target in (
        ("article", "article"),
        ("product_type", "type"),
        ("price", "price"),
        ("image_url", "image"),
        ("brand", "brand"),
        ("brand_name", "brand"),
        ("color", "color"),
        ("color_name", "color"),
        ("series_name", "series"),
        ("category", "category"),
    ):
        if row.get(source) is not None:
            meta[target] = row[source]
    return ProductMatch(id=int(row.get("id") or 0), content=content, metadata=meta)


class CatalogService:
    """Thin PostgREST client: RPC calls and table reads with the service role key."""

    def __init__(self, base_url: str, service_key: str, timeout_seconds: float = 15.0):
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

    def _ensure_configured(self) -> None:
        if not self.base_url or not self.service_key:
            raise SupabaseError(None, "SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is not configured")

    def _handle(self, response: httpx.Response) -> Any:
        if response.status_code != 200:
            body = response.text[:2048].strip()
            raise SupabaseError(response.status_code, f"supabase status {response.status_code}: {body}")
        return response.json()

    def rpc(self, name: str, payload: dict) -> list:
        self._ensure_configured()
        url = f"{self.base_url}/rest/v1/rpc/{name}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise SupabaseError(None, f"supabase rpc {name} failed: {e}") from e
        data = self._handle(response)
        return data if isinstance(data, list) else []

    def select(self, table: str, params: dict) -> list:
        self._ensure_configured()
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(url, headers=self._headers(), params=params)
        except httpx.HTTPError as e:
            raise SupabaseError(None, f"supabase select {table} failed: {e}") from e
        data = self._handle(response)
        return data if isinstance(data, list) else []

    # Products

    def search_products_hybrid(self, query_text: str, vector: Optional[str], limit: int) -> list[ProductMatch]:
        payload = {
            "arg_query_text": query_text,
            "arg_query_embedding": vector,
            "arg_match_threshold": HYBRID_MATCH_THRESHOLD,
            "arg_page_limit": limit,
            "arg_page_offset": 0,
            "arg_sort_by": "relevance",
            "arg_filter_min_price": None,
            "arg_filter_max_price": None,
            "arg_filter_brand_id": None,
            "arg_filter_color_id": None,
            "arg_filter_product_type": None,
            "arg_filter_series_id": None,
        }
        return [product_from_search_row(row) for row in self.rpc("search_products", payload)]

    def list_products(self, query_text: str, limit: int) -> list[ProductMatch]:
        payload = {
            "search_text": query_text,
            "filter_brand_id": None,
            "filter_category_id": None,
        }
        rows = self.rpc("get_all_products", payload)
        if limit > 0:
            rows = rows[:limit]
        return [product_from_listing_row(row) for row in rows]

    def search_by_article(self, article: str, limit: int) -> list[ProductMatch]:
        params = {
            "select": ARTICLE_COLUMNS,
            "article": f"ilike.*{article}*",
            "limit": str(limit),
        }
        return [product_from_listing_row(row) for row in self.select("products_full", params)]

    def products_by_ids(self, ids: Iterable[int], limit: int = 0) -> list[ProductMatch]:
        ids = list(ids)
        if limit > 0:
            ids = ids[:limit]
        if not ids:
            return []
        params = {
            "select": PRODUCT_COLUMNS,
            "id": f"in.({','.join(str(i) for i in ids)})",
        }
        return [product_from_listing_row(row) for row in self.select("products_full", params)]

    def distinct_values(self, table: str, column: str, limit: int = 100) -> list[str]:
        params = {
            "select": column,
            "order": f"{column}.asc",
            "limit": str(limit if limit > 0 else 100),
        }
        seen = set()
        out = []
        for row in self.select(table, params):
            value = str(row.get(column) or "").strip()
            if value and value not in seen:
                seen.add(value)
                out.append(value)
        return out

    # User behavior

    def user_product_ids(self, table: str, user_id: str, order_by: str, limit: int) -> list[int]:
        params = {
            "select": "product_id",
            "user_id": f"eq.{user_id}",
            "order": order_by,
            "limit": str(limit),
        }
        out = []
        for row in self.select(table, params):
            product_id = row.get("product_id")
            if isinstance(product_id, int) and product_id > 0 and product_id not in out:
                out.append(product_id)
        return out

    def ordered_product_ids(self, user_id: str, limit: int = 50) -> list[int]:
        params = {
            "select": "id,order_items(product_id)",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        out: list[int] = []
        for row in self.select("orders", params):
            for item in row.get("order_items") or []:
                product_id = item.get("product_id")
                if not isinstance(product_id, int) or product_id <= 0 or product_id in out:
                    continue
                out.append(product_id)
                if len(out) >= limit:
                    return out
        return out

    # Knowledge

    def match_knowledge(
        self,
        vector: str,
        threshold: float,
        count: int,
        topic: Optional[str] = None,
    ) -> list[KnowledgeMatch]:
        payload = {
            "query_embedding": vector,
            "match_threshold": threshold,
            "match_count": count,
            "filter": {"topic": topic} if topic else {},
        }
        return [
            KnowledgeMatch(
                id=row.get("id"),
                content=row.get("content") or "",
                metadata=row.get("metadata") or {},
                similarity=float(row.get("similarity") or 0.0),
            )
            for row in self.rpc("match_sales_knowledge", payload)
        ]
