"""
Tests for the TikTok Shop connection sync.
"""

from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import func, select

from src.adapters.tiktok import Page, Shop, TikTokClient, UpstreamAPIError
from src.db.models import (
    SYNC_STATUS_ERROR,
    SYNC_STATUS_IDLE,
    SYNC_STATUS_SYNCING,
    LedgerDailyEntry,
    LedgerProduct,
    LedgerProductDailyUnits,
    LedgerProductVariant,
    LedgerVariantDailyUnits,
    TikTokAffiliateOrder,
    TikTokConnection,
    TikTokOrder,
    TikTokProduct,
    TikTokSettlement,
)
from src.jobs.ledger_reconcile import run_ledger_reconcile
from src.jobs.tiktok_sync import (
    SKIPPED,
    NoAuthorizedShopsError,
    run_tiktok_sync,
    start_sync,
    sync_all_connections,
)
from src.utils.time_windows import day_window, utc_now

WINDOW = day_window(date(2026, 3, 1), date(2026, 3, 2))
MARCH_1_NOON = int(datetime(2026, 3, 1, 12, tzinfo=UTC).timestamp())


def _order(order_id, product_id="A", sku_id="A-1", quantity=1, price="10.00", status="COMPLETED"):
    return {
        "id": order_id,
        "status": status,
        "create_time": MARCH_1_NOON,
        "payment": {"sub_total": price, "total_amount": price, "shipping_fee": "1.00", "currency": "USD"},
        "line_items": [
            {"product_id": product_id, "sku_id": sku_id, "quantity": quantity, "sale_price": price}
        ],
    }


def _product(product_id):
    return {"id": product_id, "title": f"Product {product_id}", "status": "ACTIVATE"}


def _detail(product_id):
    return {
        "id": product_id,
        "skus": [
            {
                "id": f"{product_id}-1",
                "seller_sku": f"{product_id.lower()}01",
                "sales_attributes": [{"value_name": "Red"}],
            }
        ],
    }


def _client(tiktok_config, orders=(), affiliate_orders=(), settlements=(), products=()):
    client = TikTokClient(tiktok_config)
    client.list_orders = Mock(return_value=Page(items=list(orders)))
    client.list_affiliate_orders = Mock(return_value=Page(items=list(affiliate_orders)))
    client.list_settlements = Mock(return_value=Page(items=list(settlements)))
    client.list_products = Mock(return_value=Page(items=list(products)))
    client.get_product_detail = Mock(side_effect=lambda token, cipher, product_id: _detail(product_id))
    client.list_authorized_shops = Mock(return_value=[])
    client.refresh_token = Mock()
    return client


def _count(session, model, *where):
    return session.scalar(select(func.count()).select_from(model).where(*where))


class TestRunTikTokSync:
    def test_syncs_every_entity(self, session, connection, tiktok_config):
        client = _client(
            tiktok_config,
            orders=[_order("1"), _order("2")],
            affiliate_orders=[{"order_id": "1", "collaboration_type": "OPEN", "estimated_commission": "0.50", "create_time": MARCH_1_NOON}],
            settlements=[{"id": 77, "settlement_time": MARCH_1_NOON, "platform_fee": "1.20"}],
            products=[_product("A")],
        )

        result = run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)

        assert result.counts == {
            "orders": 2,
            "affiliate_orders": 1,
            "settlements": 1,
            "products": 1,
            "products_created": 1,
            "variants": 1,
            "products_removed": 0,
        }
        assert _count(session, TikTokOrder) == 2
        assert _count(session, TikTokAffiliateOrder) == 1
        assert _count(session, TikTokSettlement) == 1

        session.expire_all()
        stored = session.get(TikTokConnection, connection.id)
        assert stored.sync_status == SYNC_STATUS_IDLE
        assert stored.sync_error is None
        assert stored.last_sync_at is not None

    def test_repeat_sync_is_idempotent(self, session, connection, tiktok_config):
        client = _client(tiktok_config, orders=[_order("1"), _order("2")], products=[_product("A")])

        run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)
        second = run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)

        assert _count(session, TikTokOrder) == 2
        assert _count(session, TikTokProduct) == 1
        assert _count(session, LedgerProduct) == 1
        assert _count(session, LedgerProductVariant) == 1
        assert second.counts["products_created"] == 0

    def test_ledger_product_created_from_title(self, session, connection, tiktok_config):
        client = _client(tiktok_config, products=[_product("A")])

        run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        mapping = session.get(TikTokProduct, ("user-1", "A"))
        ledger_product = session.get(LedgerProduct, mapping.ledger_product_id)
        assert ledger_product.name == "Product A"
        assert ledger_product.sku == "A"
        assert ledger_product.platform == "tiktok_shop"
        assert ledger_product.cogs == 0

        variant = ledger_product.variants[0]
        assert variant.sku_id == "A-1"
        assert variant.sku_name == "Red"
        assert variant.seller_sku == "a01"

    def test_existing_variant_cogs_preserved(self, session, connection, tiktok_config):
        client = _client(tiktok_config, products=[_product("A")])
        run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        variant = session.scalars(select(LedgerProductVariant)).one()
        variant.cogs = 4.25
        session.commit()

        run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        session.expire_all()
        assert float(session.scalars(select(LedgerProductVariant)).one().cogs) == 4.25

    def test_variant_detail_failure_does_not_fail_sync(self, session, connection, tiktok_config):
        client = _client(tiktok_config, products=[_product("A"), _product("B")])
        client.get_product_detail.side_effect = [UpstreamAPIError("boom", code=1), _detail("B")]

        result = run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        assert result.counts["products"] == 2
        assert result.counts["variants"] == 1
        assert _count(session, LedgerProduct) == 2

    def test_stale_products_retired(self, session, connection, tiktok_config):
        client = _client(
            tiktok_config,
            orders=[_order("1", product_id="B", sku_id="B-1", quantity=3)],
            products=[_product("A"), _product("B"), _product("C")],
        )
        run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)
        run_ledger_reconcile(connection.id, WINDOW, 5, session)

        ledger_b = session.get(TikTokProduct, ("user-1", "B")).ledger_product_id
        assert _count(session, LedgerProductDailyUnits, LedgerProductDailyUnits.product_id == ledger_b) == 1
        assert _count(session, LedgerVariantDailyUnits, LedgerVariantDailyUnits.product_id == ledger_b) == 1

        client.list_products.return_value = Page(items=[_product("A"), _product("C")])
        result = run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        assert result.counts["products_removed"] == 1
        session.expire_all()
        assert session.get(TikTokProduct, ("user-1", "B")) is None
        assert session.get(LedgerProduct, ledger_b) is None
        assert _count(session, LedgerProductVariant, LedgerProductVariant.ledger_product_id == ledger_b) == 0
        assert _count(session, LedgerProductDailyUnits, LedgerProductDailyUnits.product_id == ledger_b) == 0
        assert _count(session, LedgerVariantDailyUnits, LedgerVariantDailyUnits.product_id == ledger_b) == 0
        assert {p.product_id for p in session.scalars(select(TikTokProduct))} == {"A", "C"}

    def test_failed_product_listing_retires_nothing(self, session, connection, tiktok_config):
        client = _client(tiktok_config, products=[_product("A"), _product("B")])
        run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        client.list_products.side_effect = UpstreamAPIError("page 2 failed", code=500)
        with pytest.raises(UpstreamAPIError):
            run_tiktok_sync(connection.id, "products", WINDOW, client=client, session=session)

        assert _count(session, TikTokProduct) == 2
        assert _count(session, LedgerProduct) == 2

    def test_optional_entities_skipped(self, session, connection, tiktok_config):
        client = _client(tiktok_config, orders=[_order("1")])
        client.list_affiliate_orders.side_effect = UpstreamAPIError("scope not granted", code=105005)
        client.list_settlements.side_effect = UpstreamAPIError("scope not granted", code=105005)

        result = run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)

        assert result.counts["orders"] == 1
        assert result.counts["affiliate_orders"] == SKIPPED
        assert result.counts["settlements"] == SKIPPED
        session.expire_all()
        assert session.get(TikTokConnection, connection.id).sync_status == SYNC_STATUS_IDLE

    def test_order_failure_marks_error(self, session, connection, tiktok_config):
        client = _client(tiktok_config)
        client.list_orders.side_effect = UpstreamAPIError("Invalid shop", code=105001)

        with pytest.raises(UpstreamAPIError):
            run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)

        session.expire_all()
        stored = session.get(TikTokConnection, connection.id)
        assert stored.sync_status == SYNC_STATUS_ERROR
        assert "Invalid shop" in stored.sync_error
        assert stored.last_sync_at is None

    def test_single_entity_sync(self, session, connection, tiktok_config):
        client = _client(tiktok_config, orders=[_order("1")])

        result = run_tiktok_sync(connection.id, "orders", WINDOW, client=client, session=session)

        assert result.counts == {"orders": 1}
        client.list_products.assert_not_called()
        client.list_settlements.assert_not_called()

    def test_unknown_sync_type(self, session, connection, tiktok_config):
        with pytest.raises(ValueError):
            run_tiktok_sync(connection.id, "refunds", WINDOW, client=Mock(), session=session)


class TestShopDiscovery:
    def test_discovers_shop_without_cipher(self, session, connection, tiktok_config):
        connection.shop_cipher = None
        session.commit()
        client = _client(tiktok_config, orders=[_order("1")])
        client.list_authorized_shops.return_value = [
            Shop(cipher="cipher-new", id="shop-9", name="New Shop", region="GB")
        ]

        run_tiktok_sync(connection.id, "orders", WINDOW, client=client, session=session)

        session.expire_all()
        stored = session.get(TikTokConnection, connection.id)
        assert stored.shop_cipher == "cipher-new"
        assert stored.shop_name == "New Shop"
        assert client.list_orders.call_args.args[1] == "cipher-new"

    def test_no_authorized_shops(self, session, connection, tiktok_config):
        connection.shop_cipher = None
        session.commit()
        client = _client(tiktok_config)

        with pytest.raises(NoAuthorizedShopsError) as exc_info:
            run_tiktok_sync(connection.id, window=WINDOW, client=client, session=session)

        assert str(exc_info.value) == "No authorized shops found. Please reconnect your TikTok Shop."
        session.expire_all()
        assert session.get(TikTokConnection, connection.id).sync_status == SYNC_STATUS_ERROR


class TestStartSync:
    def test_success_outcome(self, session, connection, tiktok_config):
        client = _client(tiktok_config, orders=[_order("1")])

        outcome = start_sync(connection.id, "orders", WINDOW, client=client, session=session)

        assert outcome["success"] is True
        assert outcome["results"]["orders"] == 1
        assert outcome["results"]["window"]["start"] == "2026-03-01T00:00:00+00:00"

    def test_already_syncing(self, session, connection, tiktok_config):
        connection.sync_status = SYNC_STATUS_SYNCING
        session.commit()
        client = _client(tiktok_config)

        outcome = start_sync(connection.id, client=client, session=session)

        assert outcome == {"success": False, "status": "already_syncing"}
        client.list_orders.assert_not_called()

    def test_failure_outcome(self, session, connection, tiktok_config):
        client = _client(tiktok_config)
        client.list_orders.side_effect = UpstreamAPIError("Invalid shop", code=105001)

        outcome = start_sync(connection.id, window=WINDOW, client=client, session=session)

        assert outcome["success"] is False
        assert "Invalid shop" in outcome["error"]

    def test_missing_connection(self, session):
        outcome = start_sync("missing", session=session)
        assert outcome["success"] is False
        assert "not found" in outcome["error"]


class TestSyncAllConnections:
    def test_mid_day_last_sync_reconciles_whole_first_day(self, session, connection, tiktok_config):
        first_day = utc_now().date() - timedelta(days=3)
        connection.last_sync_at = datetime.combine(first_day + timedelta(days=1), time(12), tzinfo=UTC)
        for order_id, created in (("early", time(0, 1)), ("late", time(12, 1))):
            session.add(
                TikTokOrder(
                    user_id="user-1",
                    order_id=order_id,
                    connection_id=connection.id,
                    order_status="COMPLETED",
                    gmv=Decimal("10.00"),
                    order_create_time=datetime.combine(first_day, created, tzinfo=UTC),
                    items=[],
                )
            )
        session.commit()

        outcomes = sync_all_connections(client=_client(tiktok_config))

        assert [o["success"] for o in outcomes] == [True]
        session.expire_all()
        entry = session.scalars(
            select(LedgerDailyEntry).where(
                LedgerDailyEntry.user_id == "user-1",
                LedgerDailyEntry.date == first_day,
            )
        ).one()
        assert entry.gross_revenue == Decimal("20.00")
        assert entry.num_orders == 2
