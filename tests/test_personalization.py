from unittest.mock import Mock

import pytest

from app.services.catalog_service import SupabaseError
from app.services.personalization_service import (
    BehaviorProfile,
    PersonalizationService,
    fallback_products,
    is_site_session,
    is_uuid,
    rank_products,
)
from conftest import make_product

USER_ID = "6f1c2a3b-4d5e-4f60-8a7b-9c0d1e2f3a4b"


class TestIdentity:
    def test_uuid(self):
        assert is_uuid(USER_ID) is True
        assert is_uuid("42") is False
        assert is_uuid(None) is False

    def test_site_session(self):
        assert is_site_session("web-123") is True
        assert is_site_session("tg:100") is False
        assert is_site_session("WA:7700") is False


class TestRankProducts:
    def test_affinity_order(self):
        profile = BehaviorProfile(favorites=[make_product(100, brand="Legrand", color="Белый")])
        products = [
            make_product(1, brand="ABB"),
            make_product(2, brand="legrand"),
            make_product(3, brand="Legrand", color="белый"),
        ]

        ranked = rank_products(products, profile)

        assert [p.id for p in ranked] == [3, 2, 1]

    def test_ties_keep_order(self):
        profile = BehaviorProfile(cart=[make_product(100, type="Розетка")])
        products = [make_product(1), make_product(2, type="розетка"), make_product(3), make_product(4, type="Розетка")]

        assert [p.id for p in rank_products(products, profile)] == [2, 4, 1, 3]

    def test_without_profile(self):
        products = [make_product(1), make_product(2)]
        assert rank_products(products, None) is products


class TestFallbackProducts:
    def test_group_order_and_dedupe(self):
        profile = BehaviorProfile(
            recently_viewed=[make_product(4)],
            favorites=[make_product(2), make_product(1)],
            cart=[make_product(1)],
            orders=[make_product(3), make_product(0)],
        )

        assert [p.id for p in fallback_products(profile)] == [1, 2, 3, 4]

    def test_limit(self):
        profile = BehaviorProfile(cart=[make_product(i) for i in range(1, 9)])
        assert len(fallback_products(profile, limit=3)) == 3

    def test_no_profile(self):
        assert fallback_products(None) == []


class TestLoadProfile:
    @pytest.fixture
    def catalog(self):
        catalog = Mock()
        catalog.user_product_ids.return_value = []
        catalog.ordered_product_ids.return_value = []
        catalog.products_by_ids.return_value = [make_product(5, brand="ABB")]
        return catalog

    def test_messenger_session_skipped(self, catalog):
        assert PersonalizationService(catalog).load_profile("tg:100", USER_ID) is None
        catalog.user_product_ids.assert_not_called()

    def test_anonymous_user_skipped(self, catalog):
        assert PersonalizationService(catalog).load_profile("web-1", "guest") is None
        catalog.user_product_ids.assert_not_called()

    def test_loads_all_groups(self, catalog):
        catalog.user_product_ids.side_effect = lambda table, user_id, order_by, limit: [5] if table == "favorites" else []

        profile = PersonalizationService(catalog).load_profile("web-1", USER_ID.upper())

        assert [p.id for p in profile.favorites] == [5]
        assert profile.cart == []
        tables = [c[0][0] for c in catalog.user_product_ids.call_args_list]
        assert tables == ["product_views", "favorites", "cart_items"]
        assert catalog.user_product_ids.call_args_list[0][0][1] == USER_ID

    def test_empty_profile_is_none(self, catalog):
        assert PersonalizationService(catalog).load_profile("web-1", USER_ID) is None

    def test_id_lookup_error_propagates(self, catalog):
        catalog.user_product_ids.side_effect = SupabaseError(500, "down")

        with pytest.raises(SupabaseError):
            PersonalizationService(catalog).load_profile("web-1", USER_ID)

    def test_hydration_error_shrinks_profile(self, catalog):
        catalog.ordered_product_ids.return_value = [7]
        catalog.user_product_ids.return_value = [5]
        catalog.products_by_ids.side_effect = [SupabaseError(500, "down"), [make_product(5)], [], [make_product(7)]]

        profile = PersonalizationService(catalog).load_profile("web-1", USER_ID)

        assert profile.recently_viewed == []
        assert [p.id for p in profile.favorites] == [5]
        assert [p.id for p in profile.orders] == [7]
