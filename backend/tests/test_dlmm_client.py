import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import BOT_WALLET, POOL
from interfaces.pool_client import DlmmClientError, PositionNotFoundError
from services.dlmm_client import DlmmHttpClient
from utils.retry import RetryConfig


def _client(handler):
    http = httpx.AsyncClient(base_url="http://dlmm.test", transport=httpx.MockTransport(handler))
    return DlmmHttpClient("http://dlmm.test", client=http, retry_config=RetryConfig(max_attempts=1))


@pytest.mark.asyncio
async def test_active_bin_and_range():
    def handler(request):
        if request.url.path == f"/pools/{POOL}/active-bin":
            return httpx.Response(200, json={"binId": 125, "price": 0.00068})
        assert request.url.params["pool"] == POOL
        return httpx.Response(200, json={"minBinId": 100, "maxBinId": 120, "poolAddress": POOL})

    client = _client(handler)

    active = await client.get_active_bin(POOL)
    position_range = await client.get_position_range("pos-1", POOL)

    assert active.bin_id == 125
    assert active.price == pytest.approx(0.00068)
    assert (position_range.min_bin, position_range.max_bin) == (100, 120)
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, json={"error": "not here"}),
        httpx.Response(500, json={"error": "Position not found"}),
        httpx.Response(200, json={"error": "Position already closed"}),
    ],
)
async def test_missing_position_is_typed(response):
    client = _client(lambda request: response)

    with pytest.raises(PositionNotFoundError) as excinfo:
        await client.get_position_range("pos-1", POOL)

    assert excinfo.value.position_id == "pos-1"


@pytest.mark.asyncio
async def test_other_failures_are_client_errors():
    client = _client(lambda request: httpx.Response(503, text="upstream down"))

    with pytest.raises(DlmmClientError) as excinfo:
        await client.get_active_bin(POOL)

    assert not isinstance(excinfo.value, PositionNotFoundError)


@pytest.mark.asyncio
async def test_wallet_positions_convert_units_and_skip_malformed():
    payload = {
        "positions": [
            {
                "positionId": "pos-1",
                "poolAddress": POOL,
                "minBinId": 100,
                "maxBinId": 120,
                "totalXAmount": "1000000",
                "totalYAmount": "2500000000",
                "feeX": 100,
                "feeY": 5000000,
            },
            {"positionId": "pos-broken", "poolAddress": POOL},
        ]
    }
    client = _client(lambda request: httpx.Response(200, json=payload))

    positions = await client.get_wallet_positions(BOT_WALLET)

    assert [p.position_id for p in positions] == ["pos-1"]
    assert positions[0].token_x_amount == pytest.approx(0.01)
    assert positions[0].token_y_amount == pytest.approx(2.5)
    assert positions[0].token_y_fees == pytest.approx(0.005)


@pytest.mark.asyncio
async def test_build_reposition_transaction_request_and_response():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "transaction": "dHg=",
                "metadata": {
                    "estimatedGasCost": 0.0004,
                    "newPositionAddress": "pos-new",
                    "minBinId": 91,
                    "maxBinId": 159,
                    "feesCollectedUsd": 1.25,
                },
            },
        )

    client = _client(handler)
    prepared = await client.build_reposition_transaction(
        position_id="pos-1",
        pool_address=POOL,
        wallet_address=BOT_WALLET,
        strategy="curve",
        bin_range_width=69,
        slippage_bps=100,
        max_fee_sol=0.01,
    )

    assert seen["binRange"] == 69
    assert seen["slippageBps"] == 100
    assert seen["strategy"] == "curve"
    assert prepared.new_position_address == "pos-new"
    assert prepared.estimated_fee_sol == pytest.approx(0.0004)
    assert (prepared.min_bin, prepared.max_bin) == (91, 159)
    assert prepared.strategy == "curve"


@pytest.mark.asyncio
async def test_build_without_transaction_is_an_error():
    client = _client(lambda request: httpx.Response(200, json={"metadata": {}}))

    with pytest.raises(DlmmClientError):
        await client.build_reposition_transaction(
            position_id="pos-1",
            pool_address=POOL,
            wallet_address=BOT_WALLET,
            strategy="spot",
            bin_range_width=69,
            slippage_bps=100,
            max_fee_sol=0.01,
        )
