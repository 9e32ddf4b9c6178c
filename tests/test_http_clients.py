"""
HTTP Client Tests
=================
Data provider and custody client against a local aiohttp test server.
"""

import pytest
from aiohttp import web
from aiohttp import test_utils

from yield_rebalancer.custody_client import DryRunCustodyClient, HttpCustodyClient
from yield_rebalancer.models import Vault
from yield_rebalancer.providers import HttpDataProvider, ProviderError, filter_and_rank_vaults


VAULTS = [
    {'protocol': 'aave', 'address': '0xAave', 'netApy': 0.045, 'totalAssetsUsd': 80_000_000},
    {'protocol': 'morpho', 'address': '0xHigh', 'netApy': 0.09, 'totalAssetsUsd': 3_000_000},
    {'protocol': 'morpho', 'address': '0xThin', 'netApy': 0.20, 'totalAssetsUsd': 50_000},
    {'protocol': 'morpho', 'address': '0xLow', 'netApy': 0.002, 'totalAssetsUsd': 9_000_000},
]


def _base_url(server: test_utils.TestServer) -> str:
    return f"http://{server.host}:{server.port}"


@pytest.fixture
async def dashboard():
    received = {}

    async def vaults(request):
        return web.json_response({'success': True, 'vaults': VAULTS})

    async def positions(request):
        received['address'] = request.query.get('address')
        return web.json_response({'success': True, 'positions': [{
            'protocol': 'aave',
            'vaultAddress': '0xAave',
            'deposited': {'amount': '1000000000', 'usd': 1000.0},
            'currentApy': 0.045,
        }]})

    async def balance(request):
        received['walletId'] = request.query.get('walletId')
        return web.json_response({'success': True, 'balance': {'raw': '12500000'}})

    app = web.Application()
    app.router.add_get('/api/vaults', vaults)
    app.router.add_get('/api/user/positions', positions)
    app.router.add_get('/api/user/balance', balance)

    async with test_utils.TestServer(app) as server:
        server.received = received
        yield server


@pytest.fixture
async def payloads():
    """Dashboard serving whatever body each test puts in server.bodies"""
    bodies = {}

    async def serve(request):
        return web.json_response(bodies[request.path])

    app = web.Application()
    for path in ('/api/vaults', '/api/user/positions', '/api/user/balance'):
        app.router.add_get(path, serve)

    async with test_utils.TestServer(app) as server:
        server.bodies = bodies
        yield server


@pytest.fixture
async def custody():
    received = []

    async def transactions(request):
        body = await request.json()
        received.append((request.match_info['wallet_id'], request.headers.get('Authorization'), body))
        if body['action'] == 'withdraw':
            return web.json_response({'error': 'insufficient shares'}, status=422)
        if body['action'] == 'deposit':
            return web.json_response({'status': 'queued'})
        return web.json_response({'hash': '0xapprovehash'})

    app = web.Application()
    app.router.add_post('/v1/wallets/{wallet_id}/transactions', transactions)

    async with test_utils.TestServer(app) as server:
        server.received = received
        yield server


class TestVaultFiltering:

    def test_filter_and_rank(self):
        vaults = [Vault.from_dict(v) for v in VAULTS]

        eligible = filter_and_rank_vaults(vaults, min_apy=0.01, min_tvl_usd=1_000_000)

        assert [v.address for v in eligible] == ['0xHigh', '0xAave']


class TestHttpDataProvider:

    async def test_best_vault(self, dashboard):
        provider = HttpDataProvider(_base_url(dashboard))
        try:
            best = await provider.get_best_vault()
        finally:
            await provider.close()

        assert best.address == '0xHigh'

    async def test_positions_and_balance(self, dashboard):
        provider = HttpDataProvider(_base_url(dashboard))
        try:
            positions = await provider.get_positions('0xUser')
            balance = await provider.get_spendable_balance('0xUser', 'wallet-1')
        finally:
            await provider.close()

        assert dashboard.received == {'address': '0xUser', 'walletId': 'wallet-1'}
        assert positions[0].amount_usd == 1000.0
        assert balance.amount_raw == 12_500_000
        assert balance.amount_usd == pytest.approx(12.5)

    async def test_http_error_raises_provider_error(self, dashboard):
        provider = HttpDataProvider(_base_url(dashboard) + "/missing")
        try:
            with pytest.raises(ProviderError):
                await provider.list_eligible_vaults()
        finally:
            await provider.close()

    async def test_unreachable_host_raises_provider_error(self):
        provider = HttpDataProvider("http://127.0.0.1:1", timeout_seconds=2)
        try:
            with pytest.raises(ProviderError):
                await provider.list_eligible_vaults()
        finally:
            await provider.close()


class TestMalformedPayloads:

    @pytest.fixture
    async def provider(self, payloads):
        provider = HttpDataProvider(_base_url(payloads))
        yield provider
        await provider.close()

    async def test_vault_missing_protocol(self, payloads, provider):
        payloads.bodies['/api/vaults'] = {'success': True, 'vaults': [
            {'address': '0xNoProtocol', 'netApy': 0.05, 'totalAssetsUsd': 5_000_000},
        ]}

        with pytest.raises(ProviderError, match="malformed vault"):
            await provider.list_eligible_vaults()

    async def test_vault_with_non_numeric_apy(self, payloads, provider):
        payloads.bodies['/api/vaults'] = {'success': True, 'vaults': [
            {'protocol': 'morpho', 'address': '0xBad', 'netApy': 'high', 'totalAssetsUsd': 5_000_000},
        ]}

        with pytest.raises(ProviderError):
            await provider.list_eligible_vaults()

    async def test_null_vault_list_is_empty(self, payloads, provider):
        payloads.bodies['/api/vaults'] = {'success': True, 'vaults': None}

        assert await provider.get_best_vault() is None

    async def test_position_with_null_deposit(self, payloads, provider):
        payloads.bodies['/api/user/positions'] = {'success': True, 'positions': [
            {'protocol': 'aave', 'vaultAddress': '0xAave', 'deposited': None, 'currentApy': 0.04},
        ]}

        with pytest.raises(ProviderError, match="malformed position"):
            await provider.get_positions('0xUser')

    async def test_null_balance_is_zero(self, payloads, provider):
        payloads.bodies['/api/user/balance'] = {'success': True, 'balance': None}

        balance = await provider.get_spendable_balance('0xUser', 'wallet-1')

        assert balance.amount_raw == 0
        assert balance.amount_usd == 0.0

    async def test_non_numeric_balance(self, payloads, provider):
        payloads.bodies['/api/user/balance'] = {'success': True, 'balance': {'raw': 'lots'}}

        with pytest.raises(ProviderError, match="malformed balance"):
            await provider.get_spendable_balance('0xUser', 'wallet-1')


class TestHttpCustodyClient:

    async def test_successful_call_returns_hash(self, custody):
        client = HttpCustodyClient(_base_url(custody), api_key='key-1', chain_id=8453)
        try:
            outcome = await client.submit_approve('wallet-1', '0xUser', '0xSpender', 1_000_000)
        finally:
            await client.close()

        assert outcome.ok
        assert outcome.reference == '0xapprovehash'
        wallet_id, auth, body = custody.received[0]
        assert wallet_id == 'wallet-1'
        assert auth == 'Bearer key-1'
        assert body == {'action': 'approve', 'account': '0xUser', 'spender': '0xSpender',
                        'amount': '1000000', 'chain_id': 8453}

    async def test_http_error_becomes_failure(self, custody):
        client = HttpCustodyClient(_base_url(custody), api_key='key-1')
        try:
            outcome = await client.submit_withdraw('wallet-1', '0xUser', 'aave', '0xPool', 5)
        finally:
            await client.close()

        assert not outcome.ok
        assert 'HTTP 422' in outcome.error

    async def test_missing_hash_becomes_failure(self, custody):
        client = HttpCustodyClient(_base_url(custody), api_key='key-1')
        try:
            outcome = await client.submit_deposit('wallet-1', '0xUser', 'morpho', '0xVault', 5)
        finally:
            await client.close()

        assert not outcome.ok
        assert 'no transaction hash' in outcome.error

    async def test_unreachable_service_becomes_failure(self):
        client = HttpCustodyClient("http://127.0.0.1:1", api_key='key-1', timeout_seconds=2)
        try:
            outcome = await client.submit_approve('wallet-1', '0xUser', '0xSpender', 1)
        finally:
            await client.close()

        assert not outcome.ok


class TestDryRunCustodyClient:

    async def test_records_without_submitting(self):
        client = DryRunCustodyClient()

        outcome = await client.submit_deposit('wallet-1', '0xUser', 'morpho', '0xVault', 10)

        assert outcome.ok
        assert outcome.reference.startswith('dryrun-deposit-')
        assert client.calls == [('deposit', {'wallet_id': 'wallet-1', 'protocol': 'morpho',
                                             'vault': '0xVault', 'amount': 10})]
