import json
import logging

import anthropic

from keeper_config import (
    ANTHROPIC_API_KEY,
    ANTHROPIC_MODEL,
    ORACLE_MAX_TOKENS,
    ORACLE_TIMEOUT_SEC,
    REBALANCE_GAS_ESTIMATE,
)
from vault_models import RebalanceDecision, format_units

logger = logging.getLogger("ZapKeeper")

PROMPT_TEMPLATE = """You are an autonomous DeFi keeper agent managing concentrated liquidity positions on Uniswap v4.

A user's position needs your assessment. Here is the on-chain state:

User: {user}
Position:
  - Tick range: [{tick_lower}, {tick_upper}]
  - Liquidity: {liquidity}
  - Deposited USDC: {deposited_usdc}
  - Deposit time: {deposit_time}

Config:
  - Range width: {range_width} ticks
  - Rebalance threshold: {threshold_bps} bps ({threshold_pct}%)
  - Slippage tolerance: {slippage_bps} bps

On-chain check:
  - needsRebalance() returned: {needs_rebalance}

Current gas price: {gas_gwei} gwei
Estimated rebalance tx cost: ~{gas_cost_eth} ETH

Should the agent execute a rebalance transaction right now?

Consider:
1. Is the position actually out of range (needsRebalance = true)?
2. Is the gas cost reasonable relative to the position size?
3. Is there any reason to wait (e.g., position too small to justify gas)?

Respond with a JSON object only, no markdown:
{{"shouldRebalance": true/false, "reasoning": "your explanation"}}"""


def build_prompt(user, state, gas_price, gas_estimate=REBALANCE_GAS_ESTIMATE):
    position, config = state.position, state.config
    return PROMPT_TEMPLATE.format(
        user=user,
        tick_lower=position.tick_lower,
        tick_upper=position.tick_upper,
        liquidity=position.liquidity,
        deposited_usdc=position.deposited_usdc_human,
        deposit_time=position.deposit_time_iso,
        range_width=config.range_width,
        threshold_bps=config.rebalance_threshold,
        threshold_pct=config.rebalance_threshold_pct,
        slippage_bps=config.slippage,
        needs_rebalance=str(state.needs_rebalance).lower(),
        gas_gwei=format_units(gas_price, 9),
        gas_cost_eth=format_units(gas_price * gas_estimate, 18),
    )


def _balanced_end(text, start):
    """Index just past the ``}`` closing the object opened at ``start``, or None."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def iter_json_objects(text):
    """
    Yields every balanced ``{...}`` substring of ``text`` left to right.
    Braces inside JSON string literals do not count towards the balance.
    """
    if not text:
        return
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            start = text.find("{", start + 1)
        else:
            yield text[start:end]
            start = text.find("{", end)


def extract_json_object(text):
    """Returns the first balanced ``{...}`` substring of ``text`` or None."""
    return next(iter_json_objects(text), None)


def fallback_decision(needs_rebalance, cause):
    """The deterministic rule: act exactly when the on-chain flag says so."""
    return RebalanceDecision(
        should_rebalance=bool(needs_rebalance),
        reasoning=f"Fallback: using on-chain needsRebalance() result ({cause})",
        fallback=True,
    )


def parse_decision(text, needs_rebalance):
    """
    Turns the oracle's free-text answer into a decision, falling back when unusable.
    Candidates are tried in order; the first object carrying a boolean
    ``shouldRebalance`` wins, so braces in leading prose do not hide the answer.
    """
    cause = "no JSON object in AI response"
    for snippet in iter_json_objects(text):
        try:
            payload = json.loads(snippet)
        except ValueError as e:
            cause = f"malformed JSON in AI response: {e}"
            continue

        should = payload.get("shouldRebalance")
        if not isinstance(should, bool):
            cause = "shouldRebalance missing or not a boolean"
            continue

        reasoning = payload.get("reasoning", "")
        if not isinstance(reasoning, str):
            reasoning = json.dumps(reasoning)
        return RebalanceDecision(should_rebalance=should, reasoning=reasoning)

    return fallback_decision(needs_rebalance, cause)


class DecisionOracle:
    """
    Asks Claude whether an out-of-range position is worth rebalancing now.
    One request per call, no retries: any failure degrades to the on-chain flag.
    """

    def __init__(self, client=None, model=ANTHROPIC_MODEL, max_tokens=ORACLE_MAX_TOKENS,
                 gas_estimate=REBALANCE_GAS_ESTIMATE):
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=ANTHROPIC_API_KEY,
                timeout=ORACLE_TIMEOUT_SEC,
                max_retries=0,
            )
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.gas_estimate = gas_estimate

    async def ask(self, prompt):
        """Sends the prompt and returns the concatenated text of the reply."""
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", None) == "text"
        )

    async def decide(self, user, state, gas_price):
        if not state.needs_rebalance:
            return RebalanceDecision(should_rebalance=False, reasoning="Position in range, no action needed")

        try:
            prompt = build_prompt(user, state, gas_price, self.gas_estimate)
        except Exception as e:
            logger.warning(f"⚠️ Could not build prompt for {user}: {e}")
            return fallback_decision(state.needs_rebalance, f"prompt build failed: {e}")

        try:
            text = await self.ask(prompt)
        except anthropic.APIStatusError as e:
            logger.warning(f"⚠️ Claude API error for {user}: HTTP {e.status_code}")
            return fallback_decision(state.needs_rebalance, f"Claude API error: HTTP {e.status_code}")
        except Exception as e:
            logger.warning(f"⚠️ Claude API error for {user}: {e}")
            return fallback_decision(state.needs_rebalance, f"Claude API error: {e}")

        decision = parse_decision(text, state.needs_rebalance)
        if decision.fallback:
            logger.warning(f"⚠️ Could not use AI response for {user}: {text[:200]!r}")
        return decision
