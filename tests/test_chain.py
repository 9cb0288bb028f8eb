"""Tests for chain.py - LCD queries with failover."""

import httpx
import pytest

from valwatch.chain import ChainQueryService
from valwatch.errors import ChainQueryError

PRIMARY = "https://lcd-1.example.com"
BACKUP = "https://lcd-2.example.com"


def service(handler, urls=(PRIMARY, BACKUP)):
    return ChainQueryService(list(urls), transport=httpx.MockTransport(handler))


class TestFailover:
    @pytest.mark.asyncio
    async def test_falls_back_and_remembers_working_url(self):
        """Test a failing LCD falls back to the next URL and that URL is kept."""
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            if request.url.host == "lcd-1.example.com":
                return httpx.Response(500)
            return httpx.Response(200, json={"balance": {"denom": "uaxl", "amount": "1234"}})

        chain = service(handler)
        assert await chain.get_broadcaster_balance("axelar1abc") == 1234
        assert await chain.get_broadcaster_balance("axelar1abc") == 1234
        assert hosts == ["lcd-1.example.com", "lcd-2.example.com", "lcd-2.example.com"]
        await chain.close()

    @pytest.mark.asyncio
    async def test_all_urls_failing(self):
        """Test ChainQueryError is raised when every LCD URL fails."""
        def handler(request):
            raise httpx.ConnectError("down")

        chain = service(handler)
        with pytest.raises(ChainQueryError):
            await chain.get_broadcaster_balance("axelar1abc")
        await chain.close()

    def test_needs_a_url(self):
        """Test the service refuses an empty URL list."""
        with pytest.raises(ValueError):
            ChainQueryService([])


class TestQueries:
    @pytest.mark.asyncio
    async def test_uptime(self):
        """Test uptime is computed from missed blocks over the signing window."""
        def handler(request):
            if request.url.path.endswith("/params"):
                return httpx.Response(200, json={"params": {"signed_blocks_window": "10000"}})
            return httpx.Response(200, json={"val_signing_info": {"missed_blocks_counter": "250"}})

        chain = service(handler)
        assert await chain.get_validator_uptime("axelarvalcons1abc") == pytest.approx(97.5)
        await chain.close()

    @pytest.mark.asyncio
    async def test_validators_follow_pagination(self):
        """Test every page of bonded validators is fetched."""
        def handler(request):
            if request.url.params.get("pagination.key") == "page2":
                return httpx.Response(200, json={"validators": [{"operator_address": "b"}], "pagination": {"next_key": None}})
            return httpx.Response(200, json={"validators": [{"operator_address": "a"}], "pagination": {"next_key": "page2"}})

        chain = service(handler)
        assert [v["operator_address"] for v in await chain.get_validators()] == ["a", "b"]
        await chain.close()

    @pytest.mark.asyncio
    async def test_validator_set_maps_pubkeys_to_valcons(self):
        """Test every page of the consensus set is read and keyed by pubkey."""
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.params.get("pagination.key") == "page2":
                return httpx.Response(
                    200,
                    json={
                        "validators": [{"address": "axelarvalcons1b", "pub_key": {"key": "KEYB"}}],
                        "pagination": {"next_key": None},
                    },
                )
            return httpx.Response(
                200,
                json={
                    "validators": [
                        {"address": "axelarvalcons1a", "pub_key": {"key": "KEYA"}},
                        {"address": "axelarvalcons1nokey"},
                    ],
                    "pagination": {"next_key": "page2"},
                },
            )

        chain = service(handler)
        assert await chain.get_validator_set() == {"KEYA": "axelarvalcons1a", "KEYB": "axelarvalcons1b"}
        assert set(paths) == {"/cosmos/base/tendermint/v1beta1/validatorsets/latest"}
        await chain.close()

    @pytest.mark.asyncio
    async def test_voter_address_from_register_proxy(self):
        """Test the voter address is read from the RegisterProxy tx."""
        def handler(request):
            return httpx.Response(
                200,
                json={"txs": [{"body": {"messages": [{"sender": "axelarvaloper1x", "proxy_addr": "axelar1proxy"}]}}]},
            )

        chain = service(handler)
        assert await chain.get_validator_voter_address("axelarvaloper1x") == "axelar1proxy"
        await chain.close()

    @pytest.mark.asyncio
    async def test_voter_address_missing(self):
        """Test no RegisterProxy tx means no voter address."""
        chain = service(lambda request: httpx.Response(200, json={"txs": []}))
        assert await chain.get_validator_voter_address("axelarvaloper1x") is None
        await chain.close()

    @pytest.mark.asyncio
    async def test_rpc_health(self):
        """Test an RPC endpoint is healthy only when it answers successfully."""
        def handler(request):
            if request.url.host == "up.example.com":
                return httpx.Response(200, json={})
            if request.url.host == "sick.example.com":
                return httpx.Response(503)
            raise httpx.ConnectError("refused")

        chain = service(handler)
        assert await chain.check_rpc_endpoint("https://up.example.com") is True
        assert await chain.check_rpc_endpoint("https://sick.example.com/") is False
        assert await chain.check_rpc_endpoint("https://gone.example.com") is False
        await chain.close()
