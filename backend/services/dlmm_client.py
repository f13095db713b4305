"""HTTP client for the DLMM sidecar.

The sidecar is a thin Node process wrapping the Meteora DLMM SDK. It exposes:

    GET  /pools/{pool}/active-bin
    GET  /positions/{position}?pool={pool}
    GET  /wallets/{wallet}/positions
    POST /reposition/prepare

Amounts come back in raw base units together with the token decimals and are
converted to UI units here.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import settings
from interfaces.pool_client import (
    ActiveBin,
    DlmmClientError,
    OnChainPosition,
    PositionNotFoundError,
    PositionRange,
    PreparedReposition,
    is_missing_position_message,
)
from utils.logger import get_logger, short_address
from utils.retry import RetryConfig, retry_async

logger = get_logger("dlmm_client")

# zBTC has 8 decimals, SOL has 9.
DEFAULT_X_DECIMALS = 8
DEFAULT_Y_DECIMALS = 9


def _to_ui_amount(raw: Any, decimals: int) -> float:
    try:
        return float(raw or 0) / (10**decimals)
    except (TypeError, ValueError):
        return 0.0


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or payload)
    return str(payload)


class DlmmHttpClient:
    """``PoolClient`` implementation backed by the DLMM sidecar."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.DLMM_SERVICE_URL).rstrip("/")
        self._timeout = timeout or settings.DLMM_REQUEST_TIMEOUT_SECONDS
        self._client = client
        self._retry = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=2.0,
            give_up_on=(PositionNotFoundError,),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        position_id: Optional[str] = None,
        **kwargs: Any,
    ) -> dict:
        response = await self._get_client().request(method, path, **kwargs)
        if response.status_code >= 400:
            detail = _error_text(response)
            if position_id and (response.status_code == 404 or is_missing_position_message(detail)):
                raise PositionNotFoundError(position_id, detail or None)
            response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict) and payload.get("error"):
            detail = str(payload["error"])
            if position_id and is_missing_position_message(detail):
                raise PositionNotFoundError(position_id, detail)
            raise DlmmClientError(detail)
        return payload

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            return await retry_async(
                self._send,
                method,
                path,
                config=self._retry,
                operation=f"dlmm {method} {path}",
                **kwargs,
            )
        except DlmmClientError:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            raise DlmmClientError(f"DLMM service request failed: {method} {path}: {exc}") from exc

    async def get_active_bin(self, pool_address: str) -> ActiveBin:
        data = await self._request("GET", f"/pools/{pool_address}/active-bin")
        return ActiveBin(
            pool_address=pool_address,
            bin_id=int(data["binId"]),
            price=float(data["price"]) if data.get("price") is not None else None,
        )

    async def get_position_range(
        self, position_id: str, pool_address: Optional[str] = None
    ) -> PositionRange:
        params = {"pool": pool_address} if pool_address else None
        data = await self._request(
            "GET", f"/positions/{position_id}", params=params, position_id=position_id
        )
        return PositionRange(
            position_id=position_id,
            pool_address=str(data.get("poolAddress") or pool_address or ""),
            min_bin=int(data["minBinId"]),
            max_bin=int(data["maxBinId"]),
        )

    async def get_wallet_positions(self, wallet_address: str) -> list[OnChainPosition]:
        data = await self._request("GET", f"/wallets/{wallet_address}/positions")
        positions: list[OnChainPosition] = []
        for item in data.get("positions") or []:
            try:
                x_decimals = int(item.get("tokenXDecimals", DEFAULT_X_DECIMALS))
                y_decimals = int(item.get("tokenYDecimals", DEFAULT_Y_DECIMALS))
                positions.append(
                    OnChainPosition(
                        position_id=str(item["positionId"]),
                        pool_address=str(item["poolAddress"]),
                        min_bin=int(item["minBinId"]),
                        max_bin=int(item["maxBinId"]),
                        token_x_symbol=item.get("tokenXSymbol") or "zBTC",
                        token_y_symbol=item.get("tokenYSymbol") or "SOL",
                        token_x_amount=_to_ui_amount(item.get("totalXAmount"), x_decimals),
                        token_y_amount=_to_ui_amount(item.get("totalYAmount"), y_decimals),
                        token_x_fees=_to_ui_amount(item.get("feeX"), x_decimals),
                        token_y_fees=_to_ui_amount(item.get("feeY"), y_decimals),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                # Positions without bins or with malformed fields are left out
                # of the live set for this pass.
                logger.warning(
                    "Skipping malformed on-chain position",
                    wallet=short_address(wallet_address),
                    position=str(item.get("positionId") if isinstance(item, dict) else item),
                    error=str(exc),
                )
        return positions

    async def build_reposition_transaction(
        self,
        *,
        position_id: str,
        pool_address: str,
        wallet_address: str,
        strategy: str,
        bin_range_width: int,
        slippage_bps: int,
        max_fee_sol: float,
    ) -> PreparedReposition:
        data = await self._request(
            "POST",
            "/reposition/prepare",
            json={
                "positionAddress": position_id,
                "poolAddress": pool_address,
                "walletAddress": wallet_address,
                "strategy": strategy,
                "binRange": bin_range_width,
                "slippageBps": slippage_bps,
                "maxGasCost": max_fee_sol,
            },
            position_id=position_id,
        )
        transaction = data.get("transaction")
        if not transaction:
            raise DlmmClientError("DLMM service returned no transaction")
        meta = data.get("metadata") or {}
        return PreparedReposition(
            transaction=str(transaction),
            estimated_fee_sol=float(meta.get("estimatedGasCost") or 0.0),
            new_position_address=meta.get("newPositionAddress"),
            strategy=str(meta.get("strategy") or strategy),
            min_bin=meta.get("minBinId"),
            max_bin=meta.get("maxBinId"),
            fees_collected_usd=meta.get("feesCollectedUsd"),
        )
