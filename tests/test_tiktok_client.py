"""
Tests for the TikTok Shop API client.
"""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from src.adapters.tiktok import (
    ACCESS_TOKEN_HEADER,
    ORDERS_SEARCH_PATH,
    Page,
    TikTokClient,
    TokenPair,
    TokenRefreshRejectedError,
    UpstreamAPIError,
    build_oauth_state,
    paginate,
    parse_oauth_state,
)
from src.utils.time_windows import SyncWindow

NO_BACKOFF = {"multiplier": 0, "min": 0, "max": 0}


def _response(data=None, code=0, message="Success"):
    response = Mock()
    response.status_code = 200
    response.headers = {"x-tt-logid": "log-123"}
    response.json.return_value = {"code": code, "message": message, "data": data or {}}
    return response


@pytest.fixture
def window():
    start = datetime(2026, 3, 1, tzinfo=UTC)
    return SyncWindow(start, start + timedelta(days=10))


@pytest.fixture
def mock_session():
    with patch("src.adapters.tiktok.requests.Session") as mock_session_class:
        session = MagicMock()
        mock_session_class.return_value = session
        yield session


@pytest.fixture
def client(tiktok_config, mock_session):
    return TikTokClient(tiktok_config, retry_backoff=NO_BACKOFF)


class TestPaginate:
    def test_follows_cursor_until_exhausted(self):
        pages = {
            None: Page(items=[1, 2], next_cursor="c1"),
            "c1": Page(items=[3], next_cursor="c2"),
            "c2": Page(items=[], next_cursor=None),
        }
        cursors = []

        def fetch(cursor):
            cursors.append(cursor)
            return pages[cursor]

        assert list(paginate(fetch)) == [1, 2, 3]
        assert cursors == [None, "c1", "c2"]

    def test_empty_page_with_cursor_keeps_going(self):
        pages = iter([Page(items=[], next_cursor="c1"), Page(items=["a"])])
        assert list(paginate(lambda cursor: next(pages))) == ["a"]


class TestTikTokClientRequests:
    def test_access_token_sent_as_header_not_param(self, client, mock_session, window):
        mock_session.request.return_value = _response({"orders": []})

        client.list_orders("secret-token", "cipher-1", window)

        kwargs = mock_session.request.call_args.kwargs
        assert kwargs["headers"] == {ACCESS_TOKEN_HEADER: "secret-token"}
        assert "access_token" not in kwargs["params"]
        assert kwargs["params"]["shop_cipher"] == "cipher-1"
        assert kwargs["params"]["app_key"] == "test_app_key"
        assert len(kwargs["params"]["sign"]) == 64
        assert kwargs["url"] == f"https://api.example.test{ORDERS_SEARCH_PATH}"

    def test_order_search_body(self, client, mock_session, window):
        mock_session.request.return_value = _response({"orders": []})

        client.list_orders("token", "cipher-1", window, page_size=20, cursor="next")

        body = json.loads(mock_session.request.call_args.kwargs["data"])
        assert body == {
            "create_time_ge": window.start_ts,
            "create_time_lt": window.end_ts,
            "page_size": 20,
            "cursor": "next",
        }

    def test_non_zero_code_raises(self, client, mock_session, window):
        mock_session.request.return_value = _response(code=105001, message="Invalid shop")

        with pytest.raises(UpstreamAPIError) as exc_info:
            client.list_orders("token", "cipher-1", window)

        assert exc_info.value.code == 105001
        assert exc_info.value.path == ORDERS_SEARCH_PATH
        assert exc_info.value.request_id == "log-123"
        assert "Invalid shop" in str(exc_info.value)

    def test_unreadable_response_raises(self, client, mock_session, window):
        response = _response()
        response.json.side_effect = ValueError("not json")
        mock_session.request.return_value = response

        with pytest.raises(UpstreamAPIError):
            client.list_orders("token", "cipher-1", window)


class TestTikTokClientPagination:
    def test_get_all_orders_collects_every_page(self, client, mock_session, window):
        mock_session.request.side_effect = [
            _response({"orders": [{"id": "1"}, {"id": "2"}], "next_cursor": "p2"}),
            _response({"orders": [{"id": "3"}, {"id": "4"}], "next_cursor": "p3"}),
            _response({"orders": [{"id": "5"}, {"id": "6"}], "next_cursor": ""}),
        ]

        orders = client.get_all_orders("token", "cipher-1", window, page_size=2)

        assert [o["order_id"] for o in orders] == ["1", "2", "3", "4", "5", "6"]
        assert mock_session.request.call_count == 3

        cursors = [
            json.loads(call.kwargs["data"]).get("cursor")
            for call in mock_session.request.call_args_list
        ]
        assert cursors == [None, "p2", "p3"]

    def test_long_window_searched_in_slices(self, client, mock_session):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        window = SyncWindow(start, start + timedelta(days=70))
        mock_session.request.side_effect = [
            _response({"orders": [{"id": "a"}]}),
            _response({"orders": [{"id": "b"}]}),
            _response({"orders": []}),
        ]

        orders = client.get_all_orders("token", "cipher-1", window)

        assert [o["order_id"] for o in orders] == ["a", "b"]
        assert mock_session.request.call_count == 3

    def test_get_all_products(self, client, mock_session):
        mock_session.request.side_effect = [
            _response({"products": [{"id": "A"}], "next_cursor": "x"}),
            _response({"products": [{"id": "B"}]}),
        ]

        products = client.get_all_products("token", "cipher-1")

        assert [p["product_id"] for p in products] == ["A", "B"]

    def test_failure_mid_listing_propagates(self, client, mock_session, window):
        mock_session.request.side_effect = [
            _response({"settlements": [{"id": 1}], "next_cursor": "p2"}),
            _response(code=500, message="Internal error"),
        ]

        with pytest.raises(UpstreamAPIError):
            client.get_all_settlements("token", "cipher-1", window)


class TestTikTokClientOAuth:
    def test_exchange_auth_code(self, client, mock_session):
        mock_session.request.return_value = _response(
            {
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "access_token_expire_in": 1900000000,
                "refresh_token_expire_in": 1910000000,
            }
        )

        tokens = client.exchange_auth_code("auth-code")

        assert tokens.access_token == "new-access"
        assert tokens.access_token_expires_at == datetime.fromtimestamp(1900000000, UTC)
        params = mock_session.request.call_args.kwargs["params"]
        assert params["auth_code"] == "auth-code"
        assert params["grant_type"] == "authorized_code"

    def test_refresh_rejected(self, client, mock_session):
        mock_session.request.return_value = _response(code=36004004, message="refresh token expired")

        with pytest.raises(TokenRefreshRejectedError):
            client.refresh_token("old-refresh")

    def test_refresh_sent_once_on_timeout(self, client, mock_session):
        mock_session.request.side_effect = [
            requests.exceptions.ReadTimeout("timed out"),
            _response({"access_token": "a", "refresh_token": "r", "access_token_expire_in": 3600}),
        ]

        with pytest.raises(requests.exceptions.ReadTimeout):
            client.refresh_token("single-use")

        assert mock_session.request.call_count == 1

    def test_auth_code_sent_once_on_connection_error(self, client, mock_session):
        mock_session.request.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _response({"access_token": "a", "refresh_token": "r"}),
        ]

        with pytest.raises(requests.exceptions.ConnectionError):
            client.exchange_auth_code("auth-code")

        assert mock_session.request.call_count == 1

    def test_listing_retried_on_timeout(self, client, mock_session, window):
        mock_session.request.side_effect = [
            requests.exceptions.ReadTimeout("timed out"),
            _response({"orders": [{"id": "1"}]}),
        ]

        page = client.list_orders("token", "cipher-1", window)

        assert [o["id"] for o in page.items] == ["1"]
        assert mock_session.request.call_count == 2

    def test_list_authorized_shops_skips_missing_cipher(self, client, mock_session):
        mock_session.request.return_value = _response(
            {
                "shops": [
                    {"id": 7, "cipher": "c-7", "name": "Shop Seven", "region": "US"},
                    {"id": 8, "name": "No Cipher"},
                ]
            }
        )

        shops = client.list_authorized_shops("token")

        assert len(shops) == 1
        assert shops[0].cipher == "c-7"
        assert shops[0].id == "7"

    def test_authorization_url(self, client):
        url = client.get_authorization_url("state-123")
        assert url.startswith("https://auth.example.test/open/authorize?")
        assert "app_key=test_app_key" in url
        assert "state=state-123" in url


class TestTokenPair:
    def test_relative_expiry(self):
        now = datetime(2026, 1, 1, tzinfo=UTC)
        tokens = TokenPair.from_response(
            {"access_token": "a", "refresh_token": "r", "access_token_expire_in": 3600}, now=now
        )
        assert tokens.access_token_expires_at == now + timedelta(hours=1)
        assert tokens.refresh_token_expires_at is None

    def test_missing_access_token(self):
        with pytest.raises(UpstreamAPIError):
            TokenPair.from_response({"refresh_token": "r"})


class TestOAuthState:
    def test_round_trip(self):
        assert parse_oauth_state(build_oauth_state("user-42")) == "user-42"

    def test_states_are_unique(self):
        assert build_oauth_state("user-42") != build_oauth_state("user-42")

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_oauth_state("!!not-base64!!")


class TestNormalization:
    def test_gmv_from_line_items(self):
        order = {
            "line_items": [
                {"quantity": 2, "sale_price": "10.50"},
                {"quantity": 1, "sale_price": "4.00"},
            ],
            "payment": {"sub_total": "99.00"},
        }
        assert TikTokClient.calculate_gmv(order) == Decimal("25.00")

    def test_gmv_falls_back_to_subtotal(self):
        order = {"line_items": [], "payment": {"sub_total": "12.34", "total_amount": "15.00"}}
        assert TikTokClient.calculate_gmv(order) == Decimal("12.34")

    def test_normalize_order(self, client):
        order = {
            "id": 5761234,
            "status": "COMPLETED",
            "create_time": 1767225600,
            "payment": {
                "total_amount": "27.99",
                "sub_total": "25.00",
                "shipping_fee": "2.99",
                "currency": "GBP",
            },
            "line_items": [
                {"product_id": 111, "sku_id": 222, "quantity": "2", "sale_price": "12.50"}
            ],
        }

        row = client._normalize_order(order)

        assert row["order_id"] == "5761234"
        assert row["gmv"] == Decimal("25.00")
        assert row["shipping_fee"] == Decimal("2.99")
        assert row["currency"] == "GBP"
        assert row["order_create_time"] == datetime(2026, 1, 1, tzinfo=UTC)
        assert row["items"] == [
            {
                "product_id": "111",
                "product_name": None,
                "sku_id": "222",
                "sku_name": None,
                "quantity": 2,
                "price": "12.50",
            }
        ]
        assert row["raw_data"] is order

    def test_normalize_settlement_with_wrapped_amounts(self, client):
        row = client._normalize_settlement(
            {"id": 99, "settlement_time": 1767225600, "platform_fee": {"amount": "3.20", "currency": "USD"}}
        )
        assert row["settlement_id"] == "99"
        assert row["platform_fee"] == Decimal("3.20")
        assert row["revenue"] == Decimal("0")

    def test_normalize_affiliate_order_defaults_type(self, client):
        row = client._normalize_affiliate_order({"order_id": 12, "estimated_commission": "1.10"})
        assert row["affiliate_type"] == "UNKNOWN"
        assert row["commission_amount"] == Decimal("1.10")
