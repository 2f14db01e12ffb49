from __future__ import annotations

from dataclasses import dataclass
from typing import Any

try:  # pragma: no cover - optional dependency wiring
    import okx.Account as OkxAccount
    import okx.Trade as OkxTrade
    from okx.consts import CANCEL_ALGOS, GET, PLACE_ALGO_ORDER, POSITION_INFO, POST
except ImportError:  # pragma: no cover - runtime fallback
    OkxAccount = None
    OkxTrade = None
    CANCEL_ALGOS = None
    GET = None
    PLACE_ALGO_ORDER = None
    POSITION_INFO = None
    POST = None


ORDERS_ALGO_PENDING_PATH = "/api/v5/trade/orders-algo-pending"


def _drop_blank(params: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in params.items() if value not in (None, "", [])}


@dataclass(slots=True)
class OkxSdkClients:
    """Container for hydrated okx-sdk REST clients."""

    account: Any | None
    trade: Any | None


class OkxAccountAdapter:
    """Routes position queries to a sub-account when one is configured."""

    def __init__(self, account_api: Any | None, *, sub_account: str | None = None) -> None:
        self._api = account_api
        self._sub_account = sub_account

    @property
    def available(self) -> bool:
        return self._api is not None

    def get_positions(self, instType: str = "SWAP", instId: str = "") -> Any:
        if not self._api:
            return {"data": []}
        if self._sub_account and hasattr(self._api, "_request_with_params") and POSITION_INFO and GET:
            params = _drop_blank({"instType": instType, "instId": instId, "subAcct": self._sub_account})
            return self._api._request_with_params(GET, POSITION_INFO, params)
        return self._api.get_positions(instType=instType, instId=instId)


class OkxTradeAdapter:
    """Thin wrapper over okx-sdk TradeAPI conditional (algo) order endpoints."""

    def __init__(self, trade_api: Any | None, *, sub_account: str | None = None) -> None:
        self._api = trade_api
        self._sub_account = sub_account

    @property
    def available(self) -> bool:
        return self._api is not None

    def place_algo_order(self, **kwargs: Any) -> Any:
        if not self._api:
            raise RuntimeError("Trade API unavailable")
        params = _drop_blank(kwargs)
        if self._sub_account:
            params["subAcct"] = self._sub_account
            if hasattr(self._api, "_request_with_params") and PLACE_ALGO_ORDER and POST:
                return self._api._request_with_params(POST, PLACE_ALGO_ORDER, params)
        return self._api.place_algo_order(**params)

    def cancel_algo_order(self, symbol: str, algo_ids: list[str]) -> Any:
        if not self._api:
            raise RuntimeError("Trade API unavailable")
        entries = [{"instId": symbol, "algoId": str(algo_id)} for algo_id in algo_ids if algo_id]
        if not entries:
            return {"code": "0", "data": []}
        if self._sub_account and hasattr(self._api, "_request_with_params") and CANCEL_ALGOS and POST:
            for entry in entries:
                entry["subAcct"] = self._sub_account
            return self._api._request_with_params(POST, CANCEL_ALGOS, entries)
        return self._api.cancel_algo_order(entries)

    def list_pending_algo_orders(
        self,
        *,
        ordType: str = "conditional",
        instId: str | None = None,
    ) -> Any:
        if not self._api:
            raise RuntimeError("Trade API unavailable")
        params = _drop_blank({"ordType": ordType, "instId": instId})
        if self._sub_account and hasattr(self._api, "_request_with_params") and GET:
            params["subAcct"] = self._sub_account
            return self._api._request_with_params(GET, ORDERS_ALGO_PENDING_PATH, params)
        getter = getattr(self._api, "order_algos_list", None) or getattr(self._api, "order_algo_pending", None)
        if getter:
            return getter(**params)
        if hasattr(self._api, "_request_with_params") and GET:
            return self._api._request_with_params(GET, ORDERS_ALGO_PENDING_PATH, params)
        raise RuntimeError("OKX trade client cannot list algo orders")


def build_okx_sdk_clients(
    *,
    api_key: str | None,
    api_secret: str | None,
    passphrase: str | None,
    flag: str = "0",
) -> OkxSdkClients:
    has_credentials = bool(api_key and api_secret and passphrase)
    account = None
    trade = None
    if OkxAccount is not None and has_credentials:
        account = OkxAccount.AccountAPI(
            api_key=api_key,
            api_secret_key=api_secret,
            passphrase=passphrase,
            flag=flag,
        )
    if OkxTrade is not None and has_credentials:
        trade = OkxTrade.TradeAPI(
            api_key=api_key,
            api_secret_key=api_secret,
            passphrase=passphrase,
            flag=flag,
        )
    return OkxSdkClients(account=account, trade=trade)


__all__ = [
    "OkxAccountAdapter",
    "OkxSdkClients",
    "OkxTradeAdapter",
    "build_okx_sdk_clients",
]
