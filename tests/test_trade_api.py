import asyncio

import pytest

from errors import TradeFailed
from sessions import TradeSession
from trade_api import TradeAPIClient, parse_trade_response


def make_session(**kwargs) -> TradeSession:
    session = TradeSession(user_id="1", public_key="pub", private_key="priv")
    for key, value in kwargs.items():
        setattr(session, key, value)
    return session


class TestParseTradeResponse:
    def test_receipt_id_shape(self):
        result = parse_trade_response({"status": "confirmed", "receiptId": "tx1", "resultAmount": "12.5"}, "tokensPurchased")
        assert result.receipt_id == "tx1"
        assert result.result_amount == 12.5

    def test_legacy_buy_shape(self):
        data = {"message": "Transaction confirmed", "txid": "tx2", "tokensPurchased": 1000}
        result = parse_trade_response(data, "tokensPurchased")
        assert result.receipt_id == "tx2"
        assert result.result_amount == 1000.0

    def test_unconfirmed_status_fails(self):
        with pytest.raises(TradeFailed):
            parse_trade_response({"message": "Slippage exceeded", "txid": "tx3"}, "solReceived")

    def test_missing_receipt_fails(self):
        with pytest.raises(TradeFailed):
            parse_trade_response({"status": "confirmed"}, "solReceived")


class TestTradeAPIClient:
    def test_buy_forwards_session_parameters(self):
        client = TradeAPIClient("https://trade.example/api/")
        posted = []

        async def fake_post(path, payload):
            posted.append((path, payload))
            return {"message": "Transaction confirmed", "txid": "tx9", "tokensPurchased": 42}

        client._post = fake_post
        session = make_session(mint="Mint111", amount=0.5, slippage_bps=100, use_jito=False)

        result = asyncio.run(client.buy(session))

        assert result.result_amount == 42
        path, payload = posted[0]
        assert path == "/buy"
        assert payload == {
            "private_key": "priv",
            "public_key": "pub",
            "mint": "Mint111",
            "amount": 0.5,
            "priorityFee": 270000,
            "slippage": 100,
            "useJito": False,
        }

    def test_sell_uses_sol_received(self):
        client = TradeAPIClient("https://trade.example/api")

        async def fake_post(path, payload):
            assert path == "/sell"
            return {"message": "Transaction confirmed", "txid": "tx10", "solReceived": "0.25"}

        client._post = fake_post
        result = asyncio.run(client.sell(make_session(mint="Mint111", amount=100)))
        assert result.result_amount == 0.25

    def test_trade_requires_mint_and_amount(self):
        client = TradeAPIClient("https://trade.example/api")
        with pytest.raises(TradeFailed):
            asyncio.run(client.buy(make_session()))
