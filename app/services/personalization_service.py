import re
from dataclasses import dataclass, field
from typing import Optional

from app.logging_config import get_logger
from app.services.catalog_service import CatalogService, ProductMatch

logger = get_logger("personalization_service")

UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[1-5][a-f0-9]{3}-[89ab][a-f0-9]{3}-[a-f0-9]{12}$", re.IGNORECASE)

MESSENGER_PREFIXES = ("tg:", "wa:")
PROFILE_ID_LIMIT = 30
ORDER_ID_LIMIT = 50
PROFILE_PRODUCTS_LIMIT = 10

TRAIT_WEIGHTS = (
    ("type", 4),
    ("brand", 3),
    ("color", 2),
    ("series", 1),
)


@dataclass
class BehaviorProfile:
    recently_viewed: list[ProductMatch] = field(default_factory=list)
    favorites: list[ProductMatch] = field(default_factory=list)
    cart: list[ProductMatch] = field(default_factory=list)
    orders: list[ProductMatch] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.recently_viewed or self.favorites or self.cart or self.orders)

    def all_products(self) -> list[ProductMatch]:
        return [*self.recently_viewed, *self.favorites, *self.cart, *self.orders]


def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_RE.match(value.strip()))


def is_site_session(session_id: str) -> bool:
    return not (session_id or "").strip().lower().startswith(MESSENGER_PREFIXES)


def _trait(product: ProductMatch, key: str) -> str:
    value = (product.metadata or {}).get(key)
    if value is None:
        return ""
    return str(value).strip().lower()


def collect_traits(profile: BehaviorProfile) -> dict[str, set[str]]:
    traits: dict[str, set[str]] = {key: set() for key, _ in TRAIT_WEIGHTS}
    for product in profile.all_products():
        for key, _ in TRAIT_WEIGHTS:
            value = _trait(product, key)
            if value:
                traits[key].add(value)
    return traits


def rank_products(products: list[ProductMatch], profile: Optional[BehaviorProfile]) -> list[ProductMatch]:
    """Stable sort by behavioral affinity score, highest first."""
    if not products or profile is None:
        return products
    traits = collect_traits(profile)
    if not any(traits.values()):
        return products

    def score(product: ProductMatch) -> int:
        total = 0
        for key, weight in TRAIT_WEIGHTS:
            value = _trait(product, key)
            if value and value in traits[key]:
                total += weight
        return total

    return sorted(products, key=score, reverse=True)


def fallback_products(profile: Optional[BehaviorProfile], limit: int = 5) -> list[ProductMatch]:
    if profile is None:
        return []
    if limit <= 0:
        limit = 5
    seen: set[int] = set()
    out: list[ProductMatch] = []
    for group in (profile.cart, profile.favorites, profile.orders, profile.recently_viewed):
        for product in group:
            if len(out) >= limit:
                return out
            if product.id <= 0 or product.id in seen:
                continue
            seen.add(product.id)
            out.append(product)
    return out


class PersonalizationService:
    def __init__(self, catalog: CatalogService):
        self.catalog = catalog

    def load_profile(self, session_id: str, user_id: Optional[str]) -> Optional[BehaviorProfile]:
        """Behavior profile for logged-in site users, None otherwise.

        Raises SupabaseError when an id lookup fails; product hydration
        failures only shrink the profile.
        """
        if not is_site_session(session_id) or not is_uuid(user_id):
            return None
        user_id = user_id.strip().lower()

        recent_ids = self.catalog.user_product_ids("product_views", user_id, "viewed_at.desc", PROFILE_ID_LIMIT)
        favorite_ids = self.catalog.user_product_ids("favorites", user_id, "created_at.desc", PROFILE_ID_LIMIT)
        cart_ids = self.catalog.user_product_ids("cart_items", user_id, "updated_at.desc", PROFILE_ID_LIMIT)
        order_ids = self.catalog.ordered_product_ids(user_id, ORDER_ID_LIMIT)

        profile = BehaviorProfile(
            recently_viewed=self._hydrate(recent_ids),
            favorites=self._hydrate(favorite_ids),
            cart=self._hydrate(cart_ids),
            orders=self._hydrate(order_ids),
        )
        if profile.is_empty():
            return None
        return profile

    def _hydrate(self, ids: list[int]) -> list[ProductMatch]:
        if not ids:
            return []
        try:
            return self.catalog.products_by_ids(ids, limit=PROFILE_PRODUCTS_LIMIT)
        except Exception as e:
            logger.warning(f"Behavior products lookup failed: {e}")
            return []
