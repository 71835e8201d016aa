"""Profitability analysis and execution priority for matched orders.

Net profit is the resolver fee minus source gas, the destination
execution cost and the opportunity cost of the safety deposit held until
expiry. Any cost input that cannot be obtained makes the order
non-profitable; nothing is guessed.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from web3 import Web3

from htlc_resolver.models import ProfitabilityAnalysis, RiskLevel, SwapOrder
from htlc_resolver.source.base import EscrowFactory

logger = logging.getLogger(__name__)

# Gas units for the full source-side flow
GAS_ESTIMATES = {
    "match_order": 500_000,  # deploys escrows
    "complete_order": 100_000,
    "token_transfer": 50_000,
    "buffer": 50_000,
}

SECONDS_PER_YEAR = 365 * 24 * 3600
SHORT_EXPIRY = 3600
NEAR_EXPIRY = 7200
LARGE_ORDER = 100 * 10**18
LOW_MARGIN = 10.0


def _eth(wei: int) -> str:
    return f"{Web3.from_wei(wei, 'ether'):f}"


class ProfitabilityAnalyzer:
    """Decides which orders are worth executing and in what order."""

    def __init__(
        self,
        factory: EscrowFactory,
        min_profit_wei: int = 10**15,
        min_profit_margin: float = 5.0,
        capital_cost_rate: float = 0.05,
        supported_chains: Optional[Iterable[int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.factory = factory
        self.min_profit_wei = min_profit_wei
        self.min_profit_margin = min_profit_margin
        self.capital_cost_rate = capital_cost_rate
        self.supported_chains = set(supported_chains) if supported_chains is not None else None
        self._clock = clock

    @staticmethod
    def estimate_gas() -> int:
        return sum(GAS_ESTIMATES.values())

    def opportunity_cost(self, safety_deposit: int, time_to_expiry: int) -> int:
        """Cost of holding the safety deposit until expiry, in wei."""
        if safety_deposit <= 0 or time_to_expiry <= 0:
            return 0
        return int(safety_deposit * self.capital_cost_rate * time_to_expiry / SECONDS_PER_YEAR)

    async def analyze(self, order: SwapOrder) -> ProfitabilityAnalysis:
        """Cost/benefit verdict for one order. Never raises."""
        analysis = ProfitabilityAnalysis(
            order_hash=order.order_hash,
            resolver_fee=order.resolver_fee,
            risk_level=RiskLevel.HIGH,
        )
        now = int(self._clock())
        time_to_expiry = order.expiry - now

        if order.resolver_fee <= 0:
            analysis.reasoning.append("No resolver fee offered")
            return analysis
        if time_to_expiry <= 0:
            analysis.reasoning.append(f"Order expired {-time_to_expiry}s ago")
            return analysis

        analysis.reasoning.append(f"Resolver fee: {_eth(order.resolver_fee)} ETH")

        try:
            gas_price = await self.factory.get_gas_price()
            destination_cost = await self.factory.estimate_execution_cost(
                order.destination_chain_id, order.execution_params, order.destination_amount
            )
            safety_deposit = await self.factory.calculate_min_safety_deposit(
                order.destination_chain_id, order.source_amount
            )
        except Exception as e:
            logger.warning(f"Cost inputs unavailable for {order.order_hash}: {e}")
            analysis.reasoning.append(f"Cost inputs unavailable: {e}")
            return analysis

        analysis.gas_estimate = self.estimate_gas()
        gas_cost = analysis.gas_estimate * gas_price
        analysis.safety_deposit = safety_deposit
        capital_cost = self.opportunity_cost(safety_deposit, time_to_expiry)

        analysis.reasoning.append(
            f"Gas cost: {_eth(gas_cost)} ETH ({analysis.gas_estimate} gas @ "
            f"{Web3.from_wei(gas_price, 'gwei')} gwei)"
        )
        analysis.reasoning.append(f"Destination execution cost: {_eth(destination_cost)} ETH")
        analysis.reasoning.append(
            f"Safety deposit: {_eth(safety_deposit)} ETH held {time_to_expiry}s, "
            f"capital cost {_eth(capital_cost)} ETH"
        )

        analysis.total_costs = gas_cost + destination_cost + capital_cost
        analysis.estimated_profit = order.resolver_fee - analysis.total_costs
        analysis.profit_margin = (analysis.estimated_profit * 10000 // order.resolver_fee) / 100

        analysis.is_profitable = (
            analysis.estimated_profit >= self.min_profit_wei
            and analysis.profit_margin >= self.min_profit_margin
        )
        if analysis.is_profitable:
            analysis.reasoning.append(
                f"Profitable: {_eth(analysis.estimated_profit)} ETH "
                f"({analysis.profit_margin:.2f}% margin)"
            )
        else:
            analysis.reasoning.append(
                f"Not profitable: {_eth(analysis.estimated_profit)} ETH "
                f"({analysis.profit_margin:.2f}% margin), need {_eth(self.min_profit_wei)} ETH "
                f"and {self.min_profit_margin:.2f}%"
            )

        analysis.risk_level = self.assess_risk(order, analysis, time_to_expiry)
        analysis.priority = self.calculate_priority(analysis, time_to_expiry)

        logger.debug(
            f"Analysis for {order.order_hash}: profitable={analysis.is_profitable} "
            f"profit={_eth(analysis.estimated_profit)} margin={analysis.profit_margin:.2f}% "
            f"priority={analysis.priority} risk={analysis.risk_level.value}"
        )
        return analysis

    def assess_risk(
        self, order: SwapOrder, analysis: ProfitabilityAnalysis, time_to_expiry: int
    ) -> RiskLevel:
        risks = []
        if time_to_expiry < SHORT_EXPIRY:
            risks.append("short_expiry")
        if order.source_amount > LARGE_ORDER:
            risks.append("large_order")
        if analysis.profit_margin < LOW_MARGIN:
            risks.append("low_margin")
        if self.supported_chains is not None and order.destination_chain_id not in self.supported_chains:
            risks.append("unknown_chain")

        if risks:
            analysis.reasoning.append(f"Risk factors: {', '.join(risks)}")
        if not risks:
            return RiskLevel.LOW
        if len(risks) <= 2:
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH

    @staticmethod
    def calculate_priority(analysis: ProfitabilityAnalysis, time_to_expiry: int) -> int:
        """Priority 1-10 for profitable orders, 0 otherwise.

        Rises with profit, falls with risk and as expiry approaches, since a
        late start leaves less room before the source cancellation stage.
        """
        if not analysis.is_profitable:
            return 0

        priority = 5.0
        profit_eth = float(Web3.from_wei(analysis.estimated_profit, "ether"))
        priority += min(profit_eth * 10, 3)

        if analysis.risk_level == RiskLevel.LOW:
            priority += 2
        elif analysis.risk_level == RiskLevel.MEDIUM:
            priority += 1
        else:
            priority -= 1

        if time_to_expiry < SHORT_EXPIRY:
            priority -= 2
        elif time_to_expiry < NEAR_EXPIRY:
            priority -= 1

        return max(1, min(10, round(priority)))

    async def batch_analyze(self, orders: list[SwapOrder]) -> list[ProfitabilityAnalysis]:
        logger.info(f"Batch analyzing {len(orders)} orders")
        analyses = await asyncio.gather(*(self.analyze(order) for order in orders))
        profitable = sum(1 for a in analyses if a.is_profitable)
        logger.info(f"Batch analysis complete: {profitable}/{len(orders)} orders profitable")
        return list(analyses)

    def get_status(self) -> dict:
        return {
            "min_profit_wei": self.min_profit_wei,
            "min_profit_margin": self.min_profit_margin,
            "capital_cost_rate": self.capital_cost_rate,
        }
