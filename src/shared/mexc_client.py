import logging
import random
import time
from typing import Optional

import requests

from src.shared.config import MEXC_BASE_URL, MEXC_REQUEST_TIMEOUT, PROXY_CHECK_URL
from src.shared.models import (
    LONG, SHORT, Account, AccountBalance, ContractInfo, Order, PositionSnapshot,
)

logger = logging.getLogger(__name__)

# Order side codes
OPEN_LONG = 1
CLOSE_SHORT = 2
OPEN_SHORT = 3
CLOSE_LONG = 4

# Order type codes
LIMIT = 1
MARKET = 5

ISOLATED_MARGIN = 1

RATE_LIMIT_CODE = 510
RATE_LIMIT_BACKOFF = (0.5, 1.2)  # seconds


def side_to_code(side: str, action: str) -> int:
    if side == LONG:
        return OPEN_LONG if action == "open" else CLOSE_LONG
    return OPEN_SHORT if action == "open" else CLOSE_SHORT


class MexcAPIError(Exception):
    """Error returned by the exchange or raised by the transport."""

    def __init__(self, message: str, code: int = None, status: int = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def is_rate_limit(self) -> bool:
        msg = self.message.lower()
        return (
            self.status == 429
            or self.code == RATE_LIMIT_CODE
            or "too frequent" in msg
            or "rate limit" in msg
        )


class MexcClient:
    """Futures client for one MEXC account, optionally routed through a proxy."""

    def __init__(self, account: Account, base_url: str = MEXC_BASE_URL):
        self.account_id = account.id
        self.account_name = account.name
        self.auth_token = account.auth_token
        self.configured_proxy = account.proxy_url
        self.proxy_url = account.proxy_url
        self.base_url = base_url.rstrip("/")
        self.timeout = MEXC_REQUEST_TIMEOUT

        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": account.auth_token,
            "Content-Type": "application/json",
        })
        if self.proxy_url and self.proxy_url.lower().startswith(("http://", "https://")):
            self.session.proxies = {"http": self.proxy_url, "https": self.proxy_url}
        elif self.proxy_url:
            logger.warning(f"[{self.account_name}] Unsupported proxy scheme, ignoring proxy")
            self.proxy_url = None

    def _request(self, method: str, path: str, params: dict = None, body=None):
        """Send a request and unwrap the exchange envelope. Raises MexcAPIError."""
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, params=params, json=body, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise MexcAPIError(f"{type(e).__name__}: {e}") from e

        if resp.status_code == 429:
            raise MexcAPIError("rate limit exceeded", status=429)
        if resp.status_code >= 400:
            raise MexcAPIError(f"HTTP {resp.status_code}: {resp.text[:200]}",
                               status=resp.status_code)

        try:
            payload = resp.json()
        except ValueError as e:
            raise MexcAPIError(f"Invalid JSON response from {path}") from e

        if isinstance(payload, dict):
            if payload.get("success") is False:
                code = payload.get("code")
                raise MexcAPIError(payload.get("message") or f"error code {code}", code=code)
            return payload.get("data")
        return payload

    def check_proxy_ip(self) -> Optional[str]:
        """Return the public IP seen through the proxy."""
        if not self.proxy_url:
            logger.info(f"[{self.account_name}] No proxy configured")
            return None
        try:
            resp = self.session.get(PROXY_CHECK_URL, timeout=5)
            resp.raise_for_status()
            ip = resp.json().get("ip")
            logger.info(f"[{self.account_name}] External IP: {ip}")
            return ip
        except Exception as e:
            logger.error(f"[{self.account_name}] Proxy IP check failed: {e}")
            return None

    def get_balance(self) -> Optional[AccountBalance]:
        try:
            assets = self._request("GET", "/api/v1/private/account/assets") or []
            usdt = next((a for a in assets if a.get("currency") == "USDT"), None)
            if usdt is None:
                return AccountBalance(available=0.0, frozen=0.0, total=0.0)
            return AccountBalance(
                available=float(usdt.get("availableBalance") or 0),
                frozen=float(usdt.get("frozenBalance") or 0),
                total=float(usdt.get("equity") or 0),
            )
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to get balance: {e}")
            return None

    def get_open_positions(self, symbol: str = None) -> Optional[list]:
        """Open positions, or None when the query failed."""
        try:
            params = {"symbol": symbol} if symbol else None
            rows = self._request("GET", "/api/v1/private/position/open_positions",
                                 params=params) or []
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to get positions: {e}")
            return None

        positions = []
        for p in rows:
            volume = float(p.get("holdVol") or 0)
            if volume <= 0:
                continue
            liq = p.get("liquidatePrice")
            positions.append(PositionSnapshot(
                symbol=p["symbol"],
                side=LONG if int(p.get("positionType", 1)) == 1 else SHORT,
                volume=volume,
                entry_price=float(p.get("openAvgPrice") or p.get("holdAvgPrice") or 0),
                leverage=int(p.get("leverage") or 1),
                margin=float(p.get("im") or 0),
                unrealized_pnl=float(p.get("unrealisedPnl") or 0),
                liquidation_price=float(liq) if liq else None,
                position_id=str(p["positionId"]) if p.get("positionId") is not None else None,
            ))
        return positions

    def has_open_position(self, symbol: str) -> bool:
        """True when a position is held. A failed query raises MexcAPIError."""
        positions = self.get_open_positions(symbol)
        if positions is None:
            raise MexcAPIError(f"could not fetch positions for {symbol}")
        return len(positions) > 0

    def get_open_orders(self, symbol: str = None) -> list:
        try:
            path = "/api/v1/private/order/list/open_orders"
            if symbol:
                path = f"{path}/{symbol}"
            rows = self._request("GET", path) or []
            if isinstance(rows, dict):
                rows = rows.get("resultList") or []
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to get open orders: {e}")
            return []

        return [
            Order(
                order_id=str(o.get("orderId")),
                symbol=o.get("symbol", ""),
                side=int(o.get("side") or 0),
                type=int(o.get("orderType") or o.get("type") or LIMIT),
                price=float(o.get("price") or 0),
                volume=float(o.get("vol") or 0),
                filled_volume=float(o.get("dealVol") or 0),
                status=str(o.get("state", "")),
                leverage=int(o.get("leverage") or 1),
                take_profit=float(o["takeProfitPrice"]) if o.get("takeProfitPrice") else None,
                stop_loss=float(o["stopLossPrice"]) if o.get("stopLossPrice") else None,
                create_time=int(o.get("createTime") or 0),
            )
            for o in rows
        ]

    def get_contract_info(self, symbol: str) -> Optional[ContractInfo]:
        try:
            detail = self._request("GET", "/api/v1/contract/detail", params={"symbol": symbol})
            if not detail:
                return None

            max_volume = 0.0
            for key in ("maxVol", "maxVolume", "maxOrderVolume", "maxOpenVol"):
                if detail.get(key) is not None:
                    max_volume = float(detail[key])
                    break

            return ContractInfo(
                symbol=symbol,
                contract_size=float(detail.get("contractSize") or 1),
                price_step=float(detail.get("priceUnit") or 0.00001),
                volume_step=float(detail.get("volUnit") or 1),
                min_volume=float(detail.get("minVol") or 1),
                max_volume=max_volume,
            )
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to get contract info for {symbol}: {e}")
            return None

    def get_current_price(self, symbol: str) -> Optional[float]:
        try:
            data = self._request("GET", "/api/v1/contract/ticker", params={"symbol": symbol})
            if isinstance(data, list):
                data = next((t for t in data if t.get("symbol") == symbol), None)
            if data and data.get("lastPrice"):
                return float(data["lastPrice"])
            return None
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to get price for {symbol}: {e}")
            return None

    def cancel_all_orders(self, symbol: str) -> bool:
        try:
            self._request("POST", "/api/v1/private/order/cancel_all", body={"symbol": symbol})
            logger.info(f"[{self.account_name}] Cancelled all orders for {symbol}")
            return True
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to cancel orders for {symbol}: {e}")
            return False

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            self._request("POST", "/api/v1/private/order/cancel", body=[order_id])
            logger.info(f"[{self.account_name}] Cancelled order {order_id} ({symbol})")
            return True
        except Exception as e:
            logger.error(f"[{self.account_name}] Failed to cancel order {order_id}: {e}")
            return False

    def submit_order(self, symbol: str, price: float, volume: float, side: int,
                     order_type: int, leverage: int, take_profit: float = None,
                     stop_loss: float = None) -> dict:
        """Submit an order, retrying once after a short backoff when rate limited."""
        body = {
            "symbol": symbol,
            "price": price,
            "vol": volume,
            "side": side,
            "type": order_type,
            "openType": ISOLATED_MARGIN,
            "leverage": leverage,
        }
        if take_profit is not None:
            body["takeProfitPrice"] = take_profit
        if stop_loss is not None:
            body["stopLossPrice"] = stop_loss

        attempt = 0
        while True:
            try:
                data = self._request("POST", "/api/v1/private/order/submit", body=body)
                order_id = data.get("orderId") if isinstance(data, dict) else data
                logger.info(f"[{self.account_name}] Order placed: {order_id}")
                return {"success": True, "order_id": str(order_id) if order_id else None}
            except MexcAPIError as e:
                if e.is_rate_limit and attempt == 0:
                    backoff = random.uniform(*RATE_LIMIT_BACKOFF)
                    logger.warning(
                        f"[{self.account_name}] Rate limited, retrying in {backoff * 1000:.0f}ms"
                    )
                    time.sleep(backoff)
                    attempt += 1
                    continue
                logger.error(f"[{self.account_name}] Order failed: {e.message}")
                return {"success": False, "message": e.message}

    def open_position(self, symbol: str, side: str, price: float, volume: float,
                      leverage: int, take_profit: float = None, stop_loss: float = None,
                      market: bool = False) -> dict:
        return self.submit_order(
            symbol=symbol,
            price=price,
            volume=volume,
            side=side_to_code(side, "open"),
            order_type=MARKET if market else LIMIT,
            leverage=leverage,
            take_profit=take_profit,
            stop_loss=stop_loss,
        )

    def close_position(self, symbol: str, side: str, price: float, volume: float,
                       market: bool = False) -> dict:
        # Leverage is irrelevant for closing orders
        return self.submit_order(
            symbol=symbol,
            price=price,
            volume=volume,
            side=side_to_code(side, "close"),
            order_type=MARKET if market else LIMIT,
            leverage=1,
        )

    def set_tp_sl(self, symbol: str, side: str, take_profit: float = None,
                  stop_loss: float = None) -> dict:
        positions = self.get_open_positions(symbol)
        if positions is None:
            return {"success": False, "message": "could not fetch positions"}
        position = next((p for p in positions if p.side == side), None)
        if position is None:
            return {"success": False, "message": "position not found"}

        body = {
            "symbol": symbol,
            "positionId": position.position_id,
            "vol": position.volume,
            "profitTrend": 1,
            "lossTrend": 1,
        }
        if take_profit is not None:
            body["takeProfitPrice"] = take_profit
        if stop_loss is not None:
            body["stopLossPrice"] = stop_loss

        try:
            self._request("POST", "/api/v1/private/stoporder/place", body=body)
            logger.info(f"[{self.account_name}] TP/SL set for {symbol}")
            return {"success": True}
        except MexcAPIError as e:
            logger.error(f"[{self.account_name}] Failed to set TP/SL: {e.message}")
            return {"success": False, "message": e.message}


class ClientManager:
    """Holds one MexcClient per account id."""

    def __init__(self):
        self.clients: dict[str, MexcClient] = {}

    def init_client(self, account: Account) -> MexcClient:
        client = MexcClient(account)
        self.clients[account.id] = client
        return client

    def get_client(self, account_id: str) -> Optional[MexcClient]:
        return self.clients.get(account_id)

    def remove_client(self, account_id: str) -> None:
        self.clients.pop(account_id, None)

    def all_clients(self) -> list:
        return list(self.clients.values())

    def sync(self, accounts: list) -> int:
        """Create or rebuild clients for enabled accounts and drop the rest.

        A cached client is rebuilt when its account token or proxy changed.
        """
        wanted = {a.id for a in accounts if a.enabled}
        for account_id in list(self.clients):
            if account_id not in wanted:
                self.remove_client(account_id)

        for account in accounts:
            if not account.enabled:
                logger.info(f"{account.name}: disabled, no client")
                continue
            current = self.clients.get(account.id)
            if current is not None and not self._is_stale(current, account):
                continue
            if current is not None:
                logger.info(f"{account.name}: credentials changed, rebuilding client")
            try:
                self.init_client(account)
                logger.info(f"{account.name}: client initialized")
            except Exception as e:
                logger.error(f"{account.name}: client init failed: {e}")

        return len(self.clients)

    @staticmethod
    def _is_stale(client: MexcClient, account: Account) -> bool:
        return (client.auth_token != account.auth_token
                or client.configured_proxy != account.proxy_url)

    def clear(self) -> None:
        self.clients.clear()
