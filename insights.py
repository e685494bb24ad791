from __future__ import annotations

import logging
from typing import Optional

from ai import TextGenerator, parse_json_response
from stats import PeriodStats


logger = logging.getLogger(__name__)

MONTHLY_FALLBACK = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

WEEKLY_FALLBACK = [
    "Track your daily spending to stay on top of your budget.",
    "Consider setting aside 20% of your income for savings this week.",
]

MONTHLY_PROMPT = """
Analyze this financial data and provide 3 concise, actionable insights.
Focus on spending patterns and practical advice.
Keep it friendly and conversational.

Financial Data for {label}:
- Total Income: {income}
- Total Expenses: {expenses}
- Net Income: {net}
- Expense Categories: {categories}

Format the response as a JSON array of strings, like this:
["insight 1", "insight 2", "insight 3"]
"""

WEEKLY_PROMPT = """
Analyze this weekly financial data and provide 2-3 quick insights.
Focus on spending trends and quick wins.
Keep it brief and actionable.

Weekly Financial Data for {label}:
- Total Income: {income}
- Total Expenses: {expenses}
- Net Income: {net}
- Top Expense Categories: {categories}

Format the response as a JSON array of strings, like this:
["insight 1", "insight 2"]
"""


def format_amount(cents: int, symbol: str = "₹") -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{symbol}{abs(cents) / 100:,.2f}"


class InsightGenerator:
    def __init__(self, client: Optional[TextGenerator], currency_symbol: str = "₹") -> None:
        self.client = client
        self.currency_symbol = currency_symbol

    def monthly(self, stats: PeriodStats, label: str) -> list[str]:
        categories = list(stats.by_category.items())
        prompt = self._prompt(MONTHLY_PROMPT, stats, label, categories)
        return self._generate(prompt, MONTHLY_FALLBACK, max_items=3, min_items=3)

    def weekly(self, stats: PeriodStats, label: str) -> list[str]:
        prompt = self._prompt(WEEKLY_PROMPT, stats, label, stats.top_categories(3))
        return self._generate(prompt, WEEKLY_FALLBACK, max_items=3)

    def _prompt(
        self,
        template: str,
        stats: PeriodStats,
        label: str,
        categories: list[tuple[str, int]],
    ) -> str:
        def money(cents: int) -> str:
            return format_amount(cents, self.currency_symbol)

        return template.format(
            label=label,
            income=money(stats.total_income),
            expenses=money(stats.total_expenses),
            net=money(stats.net),
            categories=", ".join(f"{name}: {money(amount)}" for name, amount in categories)
            or "none",
        )

    def _generate(
        self, prompt: str, fallback: list[str], *, max_items: int, min_items: int = 1
    ) -> list[str]:
        if self.client is None:
            return list(fallback)
        try:
            parsed = parse_json_response(self.client.generate(prompt))
        except Exception as exc:
            logger.warning(f"insights_fallback: reason={exc.__class__.__name__}: {exc}")
            return list(fallback)

        if not isinstance(parsed, list):
            logger.warning("insights_fallback: reason=not_a_list")
            return list(fallback)
        insights = [item.strip() for item in parsed if isinstance(item, str) and item.strip()]
        if not insights:
            logger.warning("insights_fallback: reason=empty")
            return list(fallback)
        insights = insights[:max_items]
        for extra in fallback:
            if len(insights) >= min_items:
                break
            if extra not in insights:
                insights.append(extra)
        return insights
