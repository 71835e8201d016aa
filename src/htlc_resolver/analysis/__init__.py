"""Order selection."""

from htlc_resolver.analysis.profitability import ProfitabilityAnalyzer

__all__ = ["ProfitabilityAnalyzer"]
