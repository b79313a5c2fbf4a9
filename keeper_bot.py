import sys
import time
import asyncio
import logging

from eth_abi import decode
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted
from web3.logs import DISCARD

import keeper_config as config
from alerts import TelegramAlerter
from decision_oracle import DecisionOracle
from rpc_manager import AsyncRPCManager
from vault_abi import VAULT_ABI, DEPOSITED_TOPIC, DEPOSITED_DATA_TYPES
from vault_models import (
    OUTCOME_CLOSED,
    OUTCOME_ERROR,
    OUTCOME_FAILED,
    OUTCOME_IN_RANGE,
    OUTCOME_REBALANCED,
    OUTCOME_SKIPPED,
    PositionSnapshot,
    StrategyConfig,
    TickReport,
    UserEvaluation,
    UserState,
    format_units,
)

logger = logging.getLogger("ZapKeeper")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
GAS_LIMIT_BUFFER = 1.2


class ZapKeeperBot:
    """
    ZapVault AI Keeper.

    Every tick: discover depositors from recent Deposited events, read each
    position, consult Claude for out-of-range positions and send rebalance(user)
    when approved. Users are processed one at a time; the tracked set is owned
    by this instance and only mutated from the loop.
    """

    def __init__(self, rpc=None, oracle=None, alerter=None, tracked_users=None,
                 vault_address=None, private_key=None, poll_interval_ms=None,
                 lookback_blocks=None, receipt_timeout=None, chain_id=None):
        self.rpc = rpc or AsyncRPCManager()
        self.oracle = oracle or DecisionOracle()
        self.alerter = alerter or TelegramAlerter()
        self.tracked_users = tracked_users if tracked_users is not None else set()

        self.vault_address = vault_address or config.VAULT_ADDRESS
        self.private_key = private_key or config.PRIVATE_KEY
        self.poll_interval_ms = poll_interval_ms or config.POLL_INTERVAL_MS
        self.lookback_blocks = lookback_blocks if lookback_blocks is not None else config.DISCOVERY_LOOKBACK_BLOCKS
        self.receipt_timeout = receipt_timeout or config.RECEIPT_TIMEOUT_SEC
        self.chain_id = chain_id or config.CHAIN_ID
        self.priority_fee_gwei = config.PRIORITY_FEE_GWEI
        self.gas_fallback = config.REBALANCE_GAS_ESTIMATE

        self.account = None
        self.vault = None

    @property
    def w3(self):
        return self.rpc.w3

    async def init_contracts(self):
        """Binds the keeper account and vault contract to the active connection."""
        self.account = self.w3.eth.account.from_key(self.private_key)
        self.vault = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.vault_address), abi=VAULT_ABI
        )
        if self.chain_id is None:
            self.chain_id = await self.w3.eth.chain_id
        logger.info(f"🔑 Loaded Wallet: {self.account.address}")

    async def note_rpc_error(self, error):
        """Counts rate-limit strikes; rebinds contracts when the manager fails over."""
        if not self.rpc.is_rate_limit_error(error):
            return
        try:
            if await self.rpc.handle_rate_limit():
                await self.init_contracts()
        except Exception as e:
            logger.error(f"❌ RPC failover failed: {e}")

    # ================================================================
    # DISCOVERY: Deposited events over a bounded block window
    # ================================================================

    @staticmethod
    def user_from_log(entry):
        topics = entry.get('topics') or []
        if len(topics) < 2:
            return None
        user = AsyncWeb3.to_checksum_address("0x" + HexBytes(topics[1]).hex()[-40:])
        if user == ZERO_ADDRESS:
            return None
        return user

    @staticmethod
    def describe_deposit(entry):
        try:
            usdc_amount, tick_lower, tick_upper, _ = decode(DEPOSITED_DATA_TYPES, bytes(HexBytes(entry['data'])))
            return f" | {format_units(usdc_amount, 6)} USDC [{tick_lower}, {tick_upper}]"
        except Exception:
            return ""

    async def discover_users(self):
        """Adds every depositor seen in the lookback window. Returns how many were new."""
        try:
            current_block = await self.w3.eth.block_number
            from_block = max(0, current_block - self.lookback_blocks)
            logs = await self.w3.eth.get_logs({
                'fromBlock': from_block,
                'toBlock': 'latest',
                'address': self.vault.address,
                'topics': [DEPOSITED_TOPIC],
            })
        except Exception as e:
            logger.error(f"❌ Event scan error: {e}")
            await self.note_rpc_error(e)
            return 0

        added = 0
        for entry in logs:
            user = self.user_from_log(entry)
            if user is None or user in self.tracked_users:
                continue
            self.tracked_users.add(user)
            added += 1
            logger.info(f"🆕 Discovered user: {user}{self.describe_deposit(entry)}")
        return added

    # ================================================================
    # STATE & DECISION
    # ================================================================

    async def get_user_state(self, user):
        """Reads position, config and the out-of-range flag together; any failure fails all."""
        position_raw, config_raw, needs = await asyncio.gather(
            self.vault.functions.getPosition(user).call(),
            self.vault.functions.getConfig(user).call(),
            self.vault.functions.needsRebalance(user).call(),
        )
        return UserState(
            position=PositionSnapshot.from_chain(position_raw),
            config=StrategyConfig.from_chain(config_raw),
            needs_rebalance=bool(needs),
        )

    async def decide(self, user, state, gas_price):
        return await self.oracle.decide(user, state, gas_price)

    # ================================================================
    # EXECUTION: simulate, sign, broadcast, await receipt
    # ================================================================

    async def simulate_rebalance(self, tx_func, user):
        """Simulate the transaction via eth_call. Returns True if it would succeed."""
        try:
            await tx_func.call({'from': self.account.address})
            logger.info(f"✅ Pre-flight PASS for {user}")
            return True
        except Exception as e:
            logger.warning(f"🚫 Pre-flight FAIL for {user}: {e}")
            return False

    async def build_rebalance_tx(self, tx_func):
        nonce = await self.w3.eth.get_transaction_count(self.account.address, 'pending')

        try:
            gas_est = await tx_func.estimate_gas({'from': self.account.address})
            gas_limit = int(gas_est * GAS_LIMIT_BUFFER)
        except Exception as gas_err:
            logger.warning(f"⚠️ Gas estimation failed, using fallback: {gas_err}")
            gas_limit = self.gas_fallback

        # EIP-1559 Fees
        block = await self.w3.eth.get_block('latest')
        base_fee = block['baseFeePerGas']
        priority = AsyncWeb3.to_wei(self.priority_fee_gwei, 'gwei')

        return await tx_func.build_transaction({
            'from': self.account.address,
            'nonce': nonce,
            'maxFeePerGas': base_fee + priority,
            'maxPriorityFeePerGas': priority,
            'gas': gas_limit,
            'chainId': self.chain_id,
        })

    def log_rebalanced_event(self, user, receipt):
        try:
            for event in self.vault.events.Rebalanced().process_receipt(receipt, errors=DISCARD):
                args = event['args']
                logger.info(f"📐 New range for {user}: [{args['newTickLower']}, {args['newTickUpper']}]")
        except Exception as e:
            logger.debug(f"Rebalanced event not decoded for {user}: {e}")

    async def execute_rebalance(self, user):
        """
        Sends rebalance(user). Returns the 0x tx hash once a successful receipt
        arrives, otherwise None. Never raises.
        """
        try:
            tx_func = self.vault.functions.rebalance(user)
        except Exception as e:
            logger.error(f"❌ Could not prepare rebalance for {user}: {e}")
            return None

        if not await self.simulate_rebalance(tx_func, user):
            logger.warning(f"🚫 DROPPING rebalance for {user} — simulation reverted. Will not broadcast.")
            await self.alerter.send(
                f"⚠️ <b>Rebalance Simulation Failed</b> for <code>{user}</code>. Not broadcast.",
                is_error=True
            )
            return None

        try:
            tx = await self.build_rebalance_tx(tx_func)
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            logger.error(f"❌ TX Build/Send Failed for {user}: {e}")
            await self.note_rpc_error(e)
            await self.alerter.send(
                f"⚠️ <b>Rebalance TX Failed</b> for <code>{user}</code>:\n<code>{e}</code>",
                is_error=True
            )
            return None

        tx_hex = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"🔥 TX SENT for {user}: {tx_hex}")

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted:
            logger.error(f"⌛ No receipt for {tx_hex} after {self.receipt_timeout}s")
            await self.alerter.send(
                f"⌛ <b>Rebalance Unconfirmed</b> for <code>{user}</code> after {self.receipt_timeout}s\n"
                f"🔗 <a href='{config.EXPLORER_TX_URL}{tx_hex}'>Explorer</a>",
                is_error=True
            )
            return None
        except Exception as e:
            logger.error(f"❌ Receipt Monitor Error for {tx_hex}: {e}")
            await self.note_rpc_error(e)
            await self.alerter.send(
                f"⚠️ <b>Receipt Monitor Error</b> for <code>{tx_hex}</code>:\n<code>{e}</code>",
                is_error=True
            )
            return None

        if receipt['status'] != 1:
            logger.error(f"❌ TX REVERTED: {tx_hex}")
            await self.alerter.send(
                f"🟡 <b>Rebalance REVERTED</b> for <code>{user}</code>\n"
                f"🔗 <a href='{config.EXPLORER_TX_URL}{tx_hex}'>Explorer</a>",
                is_error=True
            )
            return None

        self.log_rebalanced_event(user, receipt)
        return tx_hex

    # ================================================================
    # TICK
    # ================================================================

    async def evaluate_user(self, user, gas_price):
        try:
            state = await self.get_user_state(user)
        except Exception as e:
            logger.error(f"  ❌ Error checking {user}: {e}")
            await self.note_rpc_error(e)
            return UserEvaluation(user, OUTCOME_ERROR)

        if state.position.is_closed:
            self.tracked_users.discard(user)
            logger.info(f"  {user} — position closed, removing from watchlist")
            return UserEvaluation(user, OUTCOME_CLOSED)

        if not state.needs_rebalance:
            logger.info(f"  {user} — in range, no action needed")
            return UserEvaluation(user, OUTCOME_IN_RANGE)

        logger.info(f"  {user} — OUT OF RANGE, consulting AI...")
        try:
            decision = await self.decide(user, state, gas_price)
        except Exception as e:
            logger.error(f"  ❌ Decision failed for {user}: {e}")
            return UserEvaluation(user, OUTCOME_ERROR)
        logger.info(f"  AI decision for {user}: {decision.reasoning}")

        if not decision.should_rebalance:
            logger.info(f"  AI decided to skip rebalance for {user}")
            return UserEvaluation(user, OUTCOME_SKIPPED, decision)

        logger.info(f"  ⚔️ Executing rebalance for {user}...")
        try:
            tx_hash = await self.execute_rebalance(user)
        except Exception as e:
            logger.error(f"  ❌ Rebalance crashed for {user}: {e}")
            return UserEvaluation(user, OUTCOME_ERROR, decision)
        if tx_hash is None:
            logger.warning(f"  Rebalance tx failed for {user}")
            return UserEvaluation(user, OUTCOME_FAILED, decision)

        logger.info(f"  ✅ Rebalanced {user}! tx: {tx_hash}")
        await self.alerter.send(
            f"🟢 <b>Rebalance CONFIRMED</b>\n"
            f"🎯 User: <code>{user}</code>\n"
            f"🔗 <a href='{config.EXPLORER_TX_URL}{tx_hash}'>Explorer</a>"
        )
        return UserEvaluation(user, OUTCOME_REBALANCED, decision, tx_hash)

    async def tick(self):
        """One discover → evaluate → act pass over all tracked users."""
        start_time = time.time()
        report = TickReport()

        await self.discover_users()
        report.tracked = len(self.tracked_users)

        if not self.tracked_users:
            logger.info("No active positions to monitor")
            report.elapsed_ms = (time.time() - start_time) * 1000
            return report

        try:
            gas_price = await self.w3.eth.gas_price
        except Exception as e:
            logger.error(f"❌ Gas price fetch failed, skipping tick: {e}")
            await self.note_rpc_error(e)
            report.elapsed_ms = (time.time() - start_time) * 1000
            return report

        logger.info(f"Checking {len(self.tracked_users)} position(s) | gas: {format_units(gas_price, 9)} gwei")

        # Snapshot: evaluate_user may drop closed positions from the set
        for user in sorted(self.tracked_users):
            report.evaluations.append(await self.evaluate_user(user, gas_price))

        report.elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"🧱 Tick complete. {report.rebalanced} rebalance(s) executed. | "
            f"Tracked: {len(self.tracked_users)} | Failed: {report.failed} | {report.elapsed_ms:.0f}ms"
        )
        return report

    # ================================================================
    # MAIN LOOP
    # ================================================================

    async def run_loop(self, max_ticks=None):
        """
        Runs ticks back to back, sleeping only the remainder of the interval.
        A tick always finishes before the next one starts.
        """
        interval = self.poll_interval_ms / 1000
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            started = time.monotonic()
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"⚠️ Tick Error: {e}")
                await self.alerter.send(f"⚠️ <b>Keeper Tick Error:</b> <code>{e}</code>", is_error=True)
            ticks += 1
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def startup(self):
        if not await self.rpc.connect():
            raise RuntimeError("No RPC endpoint reachable")
        await self.init_contracts()

        logger.info("=================================")
        logger.info("  ZapVault AI Keeper Agent")
        logger.info("=================================")
        logger.info(f"Vault: {self.vault.address}")
        logger.info(f"Agent wallet: {self.account.address}")
        logger.info(f"Poll interval: {self.poll_interval_ms / 1000}s")
        logger.info(f"AI model: {self.oracle.model}")
        await self.alerter.send("🟢 <b>ZapVault Keeper Started</b>")

    async def run_forever(self):
        await self.startup()
        await self.run_loop()


def main():
    errors = config.validate_config()
    if errors:
        for err in errors:
            logger.error(f"❌ Critical Error: {err}")
        sys.exit(1)

    bot = ZapKeeperBot()
    try:
        asyncio.run(bot.run_forever())
    except KeyboardInterrupt:
        logger.info("🛑 ZapVault Keeper Stopped.")
    except Exception as e:
        logger.critical(f"💥 Fatal Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
