"""
Shared test doubles: an async eth namespace, a vault contract and a Claude client.
No network access anywhere.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from hexbytes import HexBytes

from alerts import TelegramAlerter
from decision_oracle import DecisionOracle
from keeper_bot import ZapKeeperBot
from rpc_manager import AsyncRPCManager
from vault_abi import DEPOSITED_TOPIC, DEPOSITED_DATA_TYPES

VAULT = "0x5555555555555555555555555555555555555555"
KEEPER = "0x9999999999999999999999999999999999999999"
USER_A = "0x1111111111111111111111111111111111111111"
USER_B = "0x2222222222222222222222222222222222222222"
USER_C = "0x3333333333333333333333333333333333333333"
TX_HASH = HexBytes(b"\x12" * 32)

ONE_GWEI = 1_000_000_000


def position(liquidity=10**12, deposited=1_500_000, tick_lower=-600, tick_upper=600, ts=1_700_000_000):
    return (tick_lower, tick_upper, liquidity, deposited, ts, b"\x00" * 32)


def strategy(range_width=480, threshold=500, slippage=100):
    return (range_width, threshold, slippage)


def deposit_log(user, amount=1_500_000, tick_lower=-600, tick_upper=600, liquidity=10**12):
    return {
        'topics': [HexBytes(DEPOSITED_TOPIC), HexBytes(b"\x00" * 12 + bytes.fromhex(user[2:]))],
        'data': HexBytes(encode(DEPOSITED_DATA_TYPES, [amount, tick_lower, tick_upper, liquidity])),
    }


def contract_call(result):
    fn = MagicMock()
    if isinstance(result, Exception):
        fn.call = AsyncMock(side_effect=result)
    else:
        fn.call = AsyncMock(return_value=result)
    return fn


def claude_response(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class FakeEth:
    def __init__(self, block_number=20_000, gas_price=ONE_GWEI):
        self._block_number = block_number
        self._gas_price = gas_price
        self.block_number_error = None
        self.gas_price_reads = 0
        self.get_logs = AsyncMock(return_value=[])
        self.get_transaction_count = AsyncMock(return_value=7)
        self.get_block = AsyncMock(return_value={'baseFeePerGas': 100})
        self.send_raw_transaction = AsyncMock(return_value=TX_HASH)
        self.wait_for_transaction_receipt = AsyncMock(return_value={'status': 1})

    @property
    async def block_number(self):
        if self.block_number_error is not None:
            raise self.block_number_error
        return self._block_number

    @property
    async def gas_price(self):
        self.gas_price_reads += 1
        return self._gas_price


class FakeVault:
    """Per-user answers for getPosition/getConfig/needsRebalance plus a rebalance() builder."""

    def __init__(self):
        self.address = VAULT
        self.positions = {}
        self.configs = {}
        self.flags = {}

        self.rebalance_fn = MagicMock()
        self.rebalance_fn.call = AsyncMock(return_value=[])
        self.rebalance_fn.estimate_gas = AsyncMock(return_value=200_000)
        self.rebalance_fn.build_transaction = AsyncMock(side_effect=lambda params: dict(params, to=VAULT))

        self.functions = MagicMock()
        self.functions.getPosition.side_effect = lambda user: contract_call(self.positions[user])
        self.functions.getConfig.side_effect = lambda user: contract_call(self.configs.get(user, strategy()))
        self.functions.needsRebalance.side_effect = lambda user: contract_call(self.flags.get(user, False))
        self.functions.rebalance.return_value = self.rebalance_fn

        self.events = MagicMock()
        self.events.Rebalanced.return_value.process_receipt.return_value = []

    def set_user(self, user, liquidity=10**12, needs_rebalance=False, deposited=1_500_000):
        self.positions[user] = position(liquidity=liquidity, deposited=deposited)
        self.configs[user] = strategy()
        self.flags[user] = needs_rebalance


@pytest.fixture
def eth():
    return FakeEth()


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def claude():
    client = MagicMock()
    client.messages.create = AsyncMock(
        return_value=claude_response('{"shouldRebalance": true, "reasoning": "Out of range and gas is cheap"}')
    )
    return client


@pytest.fixture
def oracle(claude):
    return DecisionOracle(client=claude, model="test-model")


@pytest.fixture
def account():
    acct = MagicMock()
    acct.address = KEEPER
    acct.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"signed-tx")
    return acct


@pytest.fixture
def make_bot(eth, vault, oracle, account):
    def _make(tracked_users=None, **overrides):
        rpc = AsyncRPCManager(endpoints=["http://rpc-one", "http://rpc-two"])
        rpc.w3 = MagicMock()
        rpc.w3.eth = eth
        params = dict(
            rpc=rpc,
            oracle=oracle,
            alerter=TelegramAlerter(bot_token=None, chat_id=None),
            tracked_users=tracked_users,
            vault_address=VAULT,
            private_key="0x" + "01" * 32,
            poll_interval_ms=1_000,
            lookback_blocks=10_000,
            receipt_timeout=5,
            chain_id=8453,
        )
        params.update(overrides)
        bot = ZapKeeperBot(**params)
        bot.vault = vault
        bot.account = account
        return bot
    return _make
