"""
AI financial advisor flow.

The prompt is rendered here and sent to a hosted Gemini model through the
google-genai SDK. Anything that implements generate(prompt) -> str can stand
in for the model (the API swaps it through a FastAPI dependency).
"""
import logging
from typing import Iterable, Optional, Protocol

from google import genai

import config
from budget import BudgetSummary, format_currency

logger = logging.getLogger("spendsense.advisor")

ADVISOR_PROMPT = """You are SpendSense, a friendly and insightful financial advisor. Your goal is to help the user manage their money better by answering their questions.

Analyze the following financial data:
- User's monthly income: {income}
- Recent Expenses:
{expenses}

Based on this data, answer the user's question clearly and concisely. Address the user directly in a helpful and encouraging tone. If the question is not related to finance, gently guide them back to financial topics.

User's Question: "{query}"
"""

TIP_PROMPT = """You are SpendSense, a friendly financial advisor following the 50/30/20 rule.

The user's budget this month:
- Monthly income: {income}
{categories}
- Total spent: {total_spent}
- Savings rate: {savings_rate:.0f}%

Give the user exactly one short, practical tip (two sentences at most) to improve this budget.
"""


class AdvisorNotConfigured(RuntimeError):
    pass


class AdvisorModel(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class GeminiAdvisor:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        api_key = api_key or config.GEMINI_API_KEY
        if not api_key:
            raise AdvisorNotConfigured("GEMINI_API_KEY is not set")
        self.client = genai.Client(api_key=api_key.strip())
        self.model = model or config.GEMINI_MODEL

    def generate(self, prompt: str) -> str:
        response = self.client.models.generate_content(model=self.model, contents=prompt)
        text = (response.text or "").strip()
        if not text:
            raise RuntimeError("empty response from model")
        return text


def render_expenses(expenses: Iterable[dict]) -> str:
    lines = [
        f"  - {e['name']}: {format_currency(float(e['amount']))} (Category: {e['category']})"
        for e in expenses
    ]
    return "\n".join(lines) if lines else "  (no expenses recorded)"


def build_prompt(income: float, expenses: Iterable[dict], query: str) -> str:
    return ADVISOR_PROMPT.format(
        income=format_currency(float(income)),
        expenses=render_expenses(expenses),
        query=query,
    )


def build_tip_prompt(summary: BudgetSummary, currency: str = "USD") -> str:
    categories = "\n".join(
        f"- {c.category}: spent {format_currency(c.spent, currency)} of "
        f"{format_currency(c.allocated, currency)}" + (" (over budget)" if c.over_budget else "")
        for c in summary.categories
    )
    return TIP_PROMPT.format(
        income=format_currency(summary.income, currency),
        categories=categories,
        total_spent=format_currency(summary.total_spent, currency),
        savings_rate=summary.savings_rate_percent,
    )


def get_financial_advice(model: AdvisorModel, income: float, expenses: Iterable[dict], query: str) -> dict:
    """Answer a user's question about their spending: returns {"answer": ...}."""
    return {"answer": model.generate(build_prompt(income, expenses, query))}


def get_financial_tip(model: AdvisorModel, summary: BudgetSummary, currency: str = "USD") -> dict:
    return {"tip": model.generate(build_tip_prompt(summary, currency))}
