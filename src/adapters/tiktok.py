"""
TikTok Shop Open API client for the ledger sync service.

Provides signed access to the TikTok Shop API v2: OAuth token exchange and
refresh, authorized shop discovery, and cursor-paginated order, affiliate
order, settlement and product listings. Handles request signing, response
envelope checking, and data normalization for our schema.
"""

import base64
import json
import logging
import secrets
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, Field

from ..common.etl import ZERO, coerce_decimal, coerce_int, first_present
from ..common.http import request_with_retry, safe_headers
from ..config.loader import get_tiktok_config
from ..utils.signing import sign
from ..utils.time_windows import SyncWindow, from_epoch, split_window, utc_now

logger = logging.getLogger(__name__)

TOKEN_GET_PATH = "/api/v2/token/get"
TOKEN_REFRESH_PATH = "/api/v2/token/refresh"
SHOPS_PATH = "/authorization/202309/shops"
ORDERS_SEARCH_PATH = "/order/202309/orders/search"
AFFILIATE_ORDERS_PATH = "/affiliate/202309/orders"
SETTLEMENTS_SEARCH_PATH = "/finance/202309/settlements/search"
PRODUCTS_SEARCH_PATH = "/product/202309/products/search"
PRODUCT_DETAIL_PATH = "/product/202309/products/{product_id}"

ACCESS_TOKEN_HEADER = "x-tts-access-token"
DEFAULT_PAGE_SIZE = 50


class TikTokConfig(BaseModel):
    """TikTok Shop application configuration from environment variables."""

    app_key: str = Field(..., description="TikTok Shop application key")
    app_secret: str = Field(..., description="Shared secret used for request signing")
    api_base: str = Field(default="https://open-api.tiktokglobalshop.com")
    auth_base: str = Field(default="https://services.tiktokshop.com")
    timeout: float = Field(default=30, description="Per-request timeout in seconds")

    @classmethod
    def from_env(cls) -> "TikTokConfig":
        """Load configuration from environment variables. Missing credentials raise ConfigurationError."""
        return cls(**get_tiktok_config())


class TikTokError(Exception):
    """Base exception for TikTok Shop API errors."""


class UpstreamAPIError(TikTokError):
    """Non-zero response code (or unreadable response) from TikTok Shop."""

    def __init__(
        self,
        message: str,
        code: int | str | None = None,
        path: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.path = path
        self.request_id = request_id

    def __str__(self) -> str:
        location = f" [{self.path}]" if self.path else ""
        return f"TikTok API error{location} (code {self.code}): {self.message}"


class TokenRefreshRejectedError(UpstreamAPIError):
    """The refresh token was rejected (revoked, expired or already used). Not retryable."""


class TokenPair(BaseModel):
    """Access/refresh token pair with absolute expiries."""

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime | None = None

    @classmethod
    def from_response(cls, data: dict, now: datetime | None = None) -> "TokenPair":
        """
        Build a token pair from a token/get or token/refresh payload.

        The *_expire_in fields are treated as absolute epoch seconds when they
        look like a timestamp, otherwise as seconds from now.
        """
        now = now or utc_now()

        def _expiry(value: Any) -> datetime | None:
            seconds = coerce_int(value)
            if seconds is None:
                return None
            if seconds > 1_000_000_000:
                return from_epoch(seconds)
            return now + timedelta(seconds=seconds)

        if not data.get("access_token"):
            raise UpstreamAPIError("Token response missing access_token", code="invalid_response")

        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            access_token_expires_at=_expiry(data.get("access_token_expire_in")) or now,
            refresh_token_expires_at=_expiry(data.get("refresh_token_expire_in")),
        )


class Shop(BaseModel):
    """An authorized shop as returned by shop discovery."""

    cipher: str
    id: str
    name: str | None = None
    region: str | None = None


@dataclass
class Page:
    """One page of a cursor-paginated listing."""

    items: list[dict] = field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


def paginate(fetch_page: Callable[[str | None], Page]) -> Iterator[dict]:
    """
    Yield every item of a cursor-paginated listing.

    Pages are fetched strictly one after another; the loop ends only on a page
    without a next cursor.
    """
    cursor = None
    page_number = 0

    while True:
        page = fetch_page(cursor)
        page_number += 1
        logger.debug(
            f"Page {page_number}: {len(page.items)} items, more: {'yes' if page.next_cursor else 'no'}"
        )
        yield from page.items

        if not page.next_cursor:
            break
        cursor = page.next_cursor


def build_oauth_state(user_id: str) -> str:
    """Encode the user id and a random nonce into an OAuth state parameter."""
    payload = json.dumps({"userId": user_id, "nonce": secrets.token_hex(16)})
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")


def parse_oauth_state(state: str) -> str:
    """Decode the user id from an OAuth state parameter."""
    try:
        padded = state + "=" * (-len(state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}") from e

    user_id = payload.get("userId") if isinstance(payload, dict) else None
    if not user_id:
        raise ValueError("OAuth state missing userId")
    return user_id


class TikTokClient:
    """TikTok Shop API client with request signing and cursor pagination."""

    def __init__(self, config: TikTokConfig | None = None, retry_backoff: dict | None = None):
        self.config = config or TikTokConfig.from_env()
        self.retry_backoff = retry_backoff
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": "TikTok-Ledger-Sync/1.0",
            }
        )

    def get_authorization_url(self, state: str) -> str:
        """Generate the seller authorization URL for the OAuth flow."""
        params = {"app_key": self.config.app_key, "state": state}
        return f"{self.config.auth_base}/open/authorize?{urlencode(params)}"

    def _signed_query(
        self, path: str, query: dict[str, Any], body: str | None = None
    ) -> dict[str, str]:
        """Stringify params, stamp the timestamp, and attach the signature."""
        params = {k: str(v) for k, v in query.items() if v is not None}
        params.setdefault("app_key", self.config.app_key)
        params.setdefault("timestamp", str(int(time.time())))
        params["sign"] = sign(path, params, body, secret=self.config.app_secret)
        return params

    def _make_request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        shop_cipher: str | None = None,
        query: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        error_class: type[UpstreamAPIError] = UpstreamAPIError,
        retry: bool = True,
    ) -> dict:
        """
        Make a signed request and unwrap the response envelope.

        Args:
            method: HTTP method (GET or POST)
            path: API path, signed verbatim
            access_token: Sent in the x-tts-access-token header, never signed
            shop_cipher: Shop identifier for shop-scoped endpoints
            query: Extra query parameters
            body: JSON body, serialized once so the signed and sent bytes match
            error_class: Exception raised for a non-zero response code
            retry: Retry transport failures; off for single-use credentials

        Returns:
            The "data" object of the response envelope

        Raises:
            UpstreamAPIError: For a non-zero code or an unreadable response
        """
        params: dict[str, Any] = dict(query or {})
        if shop_cipher:
            params["shop_cipher"] = shop_cipher

        body_str = json.dumps(body, separators=(",", ":")) if body is not None else None
        signed = self._signed_query(path, params, body_str)

        headers = {ACCESS_TOKEN_HEADER: access_token} if access_token else None

        response = request_with_retry(
            self.session,
            method,
            f"{self.config.api_base}{path}",
            params=signed,
            data=body_str,
            headers=headers,
            timeout=self.config.timeout,
            backoff=self.retry_backoff,
            attempts=3 if retry else 1,
        )

        request_id = safe_headers(response).get("x-tt-logid")

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"Unreadable response from {path}: HTTP {response.status_code}")
            raise error_class(
                f"Unreadable response (HTTP {response.status_code})",
                code=response.status_code,
                path=path,
                request_id=request_id,
            ) from e

        code = payload.get("code")
        if code != 0:
            message = payload.get("message") or json.dumps(payload)
            logger.error(f"TikTok API error on {path}: code={code} message={message}")
            raise error_class(
                message, code=code, path=path, request_id=request_id or payload.get("request_id")
            )

        return payload.get("data") or {}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def exchange_auth_code(self, code: str) -> TokenPair:
        """Exchange an authorization code for an access/refresh token pair."""
        data = self._make_request(
            "GET",
            TOKEN_GET_PATH,
            query={
                "app_secret": self.config.app_secret,
                "auth_code": code,
                "grant_type": "authorized_code",
            },
            retry=False,
        )
        logger.info("Exchanged authorization code for access token")
        return TokenPair.from_response(data)

    def refresh_token(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            TokenRefreshRejectedError: The platform refused the refresh token
        """
        data = self._make_request(
            "GET",
            TOKEN_REFRESH_PATH,
            query={
                "app_secret": self.config.app_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            error_class=TokenRefreshRejectedError,
            retry=False,
        )
        logger.info("Refreshed access token")
        return TokenPair.from_response(data)

    def list_authorized_shops(self, access_token: str) -> list[Shop]:
        """List shops the seller authorized for this application."""
        data = self._make_request("GET", SHOPS_PATH, access_token=access_token)
        shops = []
        for shop in data.get("shops") or []:
            if not shop.get("cipher"):
                continue
            shops.append(
                Shop(
                    cipher=shop["cipher"],
                    id=str(shop.get("id", "")),
                    name=shop.get("name"),
                    region=shop.get("region"),
                )
            )
        return shops

    # ------------------------------------------------------------------
    # Paginated listings (single page)
    # ------------------------------------------------------------------

    def list_orders(
        self,
        access_token: str,
        shop_cipher: str,
        window: SyncWindow,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> Page:
        """Fetch one page of orders created within the window."""
        body: dict[str, Any] = {
            "create_time_ge": window.start_ts,
            "create_time_lt": window.end_ts,
            "page_size": page_size,
        }
        if cursor:
            body["cursor"] = cursor

        data = self._make_request(
            "POST", ORDERS_SEARCH_PATH, access_token=access_token, shop_cipher=shop_cipher, body=body
        )
        return Page(
            items=data.get("orders") or [],
            next_cursor=data.get("next_cursor") or None,
            total=coerce_int(data.get("total_count")),
        )

    def list_affiliate_orders(
        self,
        access_token: str,
        shop_cipher: str,
        window: SyncWindow,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> Page:
        """Fetch one page of affiliate orders for the window's calendar days."""
        query: dict[str, Any] = {
            "start_date": window.start_date.isoformat(),
            "end_date": window.end_date.isoformat(),
            "page_size": page_size,
        }
        if cursor:
            query["cursor"] = cursor

        data = self._make_request(
            "GET", AFFILIATE_ORDERS_PATH, access_token=access_token, shop_cipher=shop_cipher, query=query
        )
        return Page(items=data.get("orders") or [], next_cursor=data.get("next_cursor") or None)

    def list_settlements(
        self,
        access_token: str,
        shop_cipher: str,
        window: SyncWindow,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> Page:
        """Fetch one page of settlements requested within the window."""
        body: dict[str, Any] = {
            "request_time_ge": window.start_ts,
            "request_time_lt": window.end_ts,
            "page_size": page_size,
        }
        if cursor:
            body["cursor"] = cursor

        data = self._make_request(
            "POST", SETTLEMENTS_SEARCH_PATH, access_token=access_token, shop_cipher=shop_cipher, body=body
        )
        return Page(items=data.get("settlements") or [], next_cursor=data.get("next_cursor") or None)

    def list_products(
        self,
        access_token: str,
        shop_cipher: str,
        window: SyncWindow | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> Page:
        """
        Fetch one page of the shop's products.

        The product search is not time-bounded; the window is accepted for a
        uniform listing signature and ignored.
        """
        body: dict[str, Any] = {"page_size": page_size}
        if cursor:
            body["cursor"] = cursor

        data = self._make_request(
            "POST", PRODUCTS_SEARCH_PATH, access_token=access_token, shop_cipher=shop_cipher, body=body
        )
        return Page(
            items=data.get("products") or [],
            next_cursor=data.get("next_cursor") or None,
            total=coerce_int(data.get("total_count")),
        )

    def get_product_detail(self, access_token: str, shop_cipher: str, product_id: str) -> dict:
        """Fetch a single product including its SKUs."""
        return self._make_request(
            "GET",
            PRODUCT_DETAIL_PATH.format(product_id=product_id),
            access_token=access_token,
            shop_cipher=shop_cipher,
        )

    # ------------------------------------------------------------------
    # Full listings
    # ------------------------------------------------------------------

    def get_all_orders(
        self, access_token: str, shop_cipher: str, window: SyncWindow, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[dict]:
        """
        Fetch every order in the window.

        The window is searched in 30-day slices, each paginated to the end.

        Returns:
            Orders normalized for the tiktok_orders table
        """
        orders: list[dict] = []
        logger.info(f"Fetching TikTok orders from {window.start} to {window.end}")

        for sub_window in split_window(window):
            before = len(orders)
            orders.extend(
                paginate(
                    lambda cursor, w=sub_window: self.list_orders(
                        access_token, shop_cipher, w, page_size, cursor
                    )
                )
            )
            logger.info(
                f"Fetched {len(orders) - before} orders for {sub_window.start.date()} - {sub_window.end.date()}"
            )

        logger.info(f"Total orders fetched: {len(orders)}")
        return [self._normalize_order(order) for order in orders]

    def get_all_affiliate_orders(
        self, access_token: str, shop_cipher: str, window: SyncWindow, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[dict]:
        """Fetch every affiliate order in the window, normalized for our schema."""
        orders = list(
            paginate(
                lambda cursor: self.list_affiliate_orders(
                    access_token, shop_cipher, window, page_size, cursor
                )
            )
        )
        logger.info(f"Total affiliate orders fetched: {len(orders)}")
        return [self._normalize_affiliate_order(order) for order in orders]

    def get_all_settlements(
        self, access_token: str, shop_cipher: str, window: SyncWindow, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[dict]:
        """Fetch every settlement in the window, normalized for our schema."""
        settlements = list(
            paginate(
                lambda cursor: self.list_settlements(access_token, shop_cipher, window, page_size, cursor)
            )
        )
        logger.info(f"Total settlements fetched: {len(settlements)}")
        return [self._normalize_settlement(settlement) for settlement in settlements]

    def get_all_products(
        self, access_token: str, shop_cipher: str, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[dict]:
        """Fetch the complete live product list, normalized for our schema."""
        products = list(
            paginate(
                lambda cursor: self.list_products(access_token, shop_cipher, None, page_size, cursor)
            )
        )
        logger.info(f"Total products fetched: {len(products)}")
        return [self._normalize_product(product) for product in products]

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _line_items(order: dict) -> list[dict]:
        return order.get("line_items") or order.get("order_line_list") or []

    @staticmethod
    def _item_price(item: dict) -> Decimal:
        return coerce_decimal(
            first_present(item, "sale_price", "sku_sale_price", "original_price", "item_price")
        )

    @classmethod
    def calculate_gmv(cls, order: dict) -> Decimal:
        """
        Gross merchandise value of an order: sum of quantity x sale price.

        Falls back to the subtotal, then the total, when no line item carries a price.
        """
        gmv = ZERO
        for item in cls._line_items(order):
            quantity = coerce_decimal(item.get("quantity") or 1)
            gmv += quantity * cls._item_price(item)

        if gmv == ZERO:
            payment = order.get("payment") or {}
            gmv = coerce_decimal(first_present(payment, "sub_total", "total_amount"))

        return gmv

    def _normalize_order(self, order: dict) -> dict:
        """Normalize a TikTok order into a tiktok_orders row."""
        payment = order.get("payment") or {}

        items = [
            {
                "product_id": str(item["product_id"]) if item.get("product_id") else None,
                "product_name": item.get("product_name"),
                "sku_id": str(item["sku_id"]) if item.get("sku_id") else None,
                "sku_name": item.get("sku_name"),
                "quantity": coerce_int(item.get("quantity")) or 1,
                "price": str(self._item_price(item)),
            }
            for item in self._line_items(order)
        ]

        return {
            "order_id": str(order["id"]),
            "order_status": order.get("status"),
            "payment_status": payment.get("status"),
            "total_amount": coerce_decimal(payment.get("total_amount")),
            "subtotal": coerce_decimal(payment.get("sub_total")),
            "gmv": self.calculate_gmv(order),
            "shipping_fee": coerce_decimal(payment.get("shipping_fee")),
            "platform_discount": coerce_decimal(payment.get("platform_discount")),
            "seller_discount": coerce_decimal(payment.get("seller_discount")),
            "refund_amount": coerce_decimal(order.get("refund_amount")),
            "currency": payment.get("currency") or "USD",
            "order_create_time": from_epoch(order.get("create_time")),
            "order_paid_time": from_epoch(order.get("paid_time")),
            "items": items,
            "raw_data": order,
        }

    def _normalize_affiliate_order(self, order: dict) -> dict:
        """Normalize an affiliate order into a tiktok_affiliate_orders row."""
        return {
            "order_id": str(order["order_id"]),
            "affiliate_type": order.get("collaboration_type") or "UNKNOWN",
            "commission_rate": coerce_decimal(order.get("commission_rate")),
            "commission_amount": coerce_decimal(order.get("estimated_commission")),
            "order_amount": coerce_decimal(order.get("total_payment_amount")),
            "product_id": str(order["product_id"]) if order.get("product_id") else None,
            "product_name": order.get("product_name"),
            "creator_username": order.get("creator_username"),
            "order_create_time": from_epoch(order.get("create_time")),
            "raw_data": order,
        }

    def _normalize_settlement(self, settlement: dict) -> dict:
        """Normalize a settlement into a tiktok_settlements row."""
        return {
            "settlement_id": str(settlement["id"]),
            "settlement_time": from_epoch(settlement.get("settlement_time")),
            "settlement_amount": coerce_decimal(settlement.get("settlement_amount")),
            "revenue": coerce_decimal(settlement.get("revenue")),
            "platform_fee": coerce_decimal(settlement.get("platform_fee")),
            "affiliate_commission": coerce_decimal(settlement.get("affiliate_commission")),
            "shipping_fee_subsidy": coerce_decimal(settlement.get("shipping_fee_subsidy")),
            "refund_amount": coerce_decimal(settlement.get("refund_amount")),
            "adjustment": coerce_decimal(settlement.get("adjustment")),
            "currency": settlement.get("currency") or "USD",
            "raw_data": settlement,
        }

    def _normalize_product(self, product: dict) -> dict:
        """Normalize a product into a tiktok_products row."""
        return {
            "product_id": str(product["id"]),
            "product_name": product.get("title"),
            "product_status": product.get("status"),
            "skus": product.get("skus") or [],
            "raw_data": product,
        }
