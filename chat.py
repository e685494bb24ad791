from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from ai import TextGenerator, parse_json_response
from database import local_now
from insights import format_amount
from ledger import LedgerWriteError
from models import TransactionType, User
from notifications import normalize_phone
from schemas import ParsedTransaction, TransactionIn
from services import AccountService, TransactionService, UserService


logger = logging.getLogger(__name__)

INCOME_CATEGORIES = ["salary", "freelance", "investments", "business", "rental", "other-income"]
EXPENSE_CATEGORIES = [
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
]

CATEGORY_KEYWORDS = {
    "food": "food",
    "meal": "food",
    "lunch": "food",
    "dinner": "food",
    "breakfast": "food",
    "restaurant": "food",
    "salary": "salary",
    "freelance": "freelance",
    "health": "healthcare",
    "medical": "healthcare",
    "doctor": "healthcare",
    "medicine": "healthcare",
    "shopping": "shopping",
    "clothes": "shopping",
    "clothing": "shopping",
    "transport": "transportation",
    "fuel": "transportation",
    "gas": "transportation",
    "rent": "housing",
    "house": "housing",
    "home": "housing",
    "utility": "utilities",
    "electricity": "utilities",
    "water": "utilities",
    "internet": "utilities",
    "phone": "utilities",
    "entertainment": "entertainment",
    "movie": "entertainment",
    "game": "entertainment",
    "education": "education",
    "school": "education",
    "tuition": "education",
    "travel": "travel",
    "trip": "travel",
    "vacation": "travel",
    "insurance": "insurance",
    "gift": "gifts",
    "donation": "gifts",
    "bill": "bills",
    "fee": "bills",
    "personal": "personal",
    "gym": "personal",
    "beauty": "personal",
    "haircut": "personal",
}

INCOME_KEYWORDS = ["earned", "received", "income", "salary", "payment", "credit", "got"]

_AMOUNT = re.compile(r"(\d+(?:\.\d{1,2})?)")
_FILLER = re.compile(
    r"\b(spend|spent|paid|bought|purchase|expense|cost|earned|received|income|"
    r"payment|credit|got|in|for|on|with)\b",
    re.IGNORECASE,
)

PARSE_PROMPT = """
Parse this WhatsApp message into a structured transaction. Extract the amount, description, type (EXPENSE/INCOME), and category.

Message: "{message}"

Available categories:
Income: {income_categories}
Expense: {expense_categories}

Rules:
- If the message contains words like "spend", "paid", "bought", "purchase", "expense", "cost", "paid for" → type is EXPENSE
- If the message contains words like "earned", "received", "income", "salary", "payment", "credit" → type is INCOME
- Extract the amount (look for numbers, currency symbols like ₹, $, etc.)
- Extract a clear description of what the transaction is for
- Map to the most appropriate category from the list above
- If no clear type is mentioned, default to EXPENSE

Return ONLY a JSON object with this exact structure:
{{
  "type": "EXPENSE" or "INCOME",
  "amount": number,
  "description": "string",
  "category": "category-id-from-list",
  "confidence": "high" or "medium" or "low"
}}

Examples:
- "spend 2000 in food" → {{"type": "EXPENSE", "amount": 2000, "description": "Food", "category": "food", "confidence": "high"}}
- "paid 500 for groceries" → {{"type": "EXPENSE", "amount": 500, "description": "Groceries", "category": "groceries", "confidence": "high"}}
- "earned 10000 salary" → {{"type": "INCOME", "amount": 10000, "description": "Salary", "category": "salary", "confidence": "high"}}
- "2000 food" → {{"type": "EXPENSE", "amount": 2000, "description": "Food", "category": "food", "confidence": "medium"}}
"""


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}", text) is not None


def categories_for(txn_type: TransactionType) -> list[str]:
    return INCOME_CATEGORIES if txn_type == TransactionType.income else EXPENSE_CATEGORIES


def _fuzzy_category(text: str, allowed: list[str]) -> Optional[str]:
    candidates = {category: category for category in allowed}
    for keyword, category in CATEGORY_KEYWORDS.items():
        if category in allowed:
            candidates[keyword] = category

    matches: set[str] = set()
    for token in re.findall(r"[a-z]{4,}", text):
        for word, category in candidates.items():
            if len(word) >= 4 and Levenshtein.distance(token, word) <= 1:
                matches.add(category)
    if len(matches) == 1:
        return matches.pop()
    return None


def find_best_category(description: str, txn_type: TransactionType) -> str:
    allowed = categories_for(txn_type)
    text = description.lower()

    for category in allowed:
        if _contains_word(text, category):
            return category

    for keyword, category in CATEGORY_KEYWORDS.items():
        if category in allowed and _contains_word(text, keyword):
            return category

    fuzzy = _fuzzy_category(text, allowed)
    if fuzzy:
        return fuzzy
    return "other-income" if txn_type == TransactionType.income else "other-expense"


def fallback_parse_transaction(message: str) -> Optional[ParsedTransaction]:
    amount_match = _AMOUNT.search(message)
    if not amount_match:
        return None

    lower = message.lower()
    txn_type = TransactionType.expense
    if any(_contains_word(lower, keyword) for keyword in INCOME_KEYWORDS):
        txn_type = TransactionType.income

    cleaned = _AMOUNT.sub("", message)
    cleaned = " ".join(_FILLER.sub("", cleaned).split())
    if cleaned:
        description = cleaned[0].upper() + cleaned[1:]
    else:
        description = "Income" if txn_type == TransactionType.income else "Expense"

    try:
        return ParsedTransaction(
            type=txn_type,
            amount=Decimal(amount_match.group(1)),
            description=description[:200],
            category=find_best_category(message, txn_type),
            confidence="medium",
        )
    except ValidationError:
        return None


def parse_transaction_message(
    message: str, client: Optional[TextGenerator]
) -> Optional[ParsedTransaction]:
    if client is None:
        return fallback_parse_transaction(message)

    prompt = PARSE_PROMPT.format(
        message=message,
        income_categories=", ".join(INCOME_CATEGORIES),
        expense_categories=", ".join(EXPENSE_CATEGORIES),
    )
    try:
        parsed = ParsedTransaction.model_validate(parse_json_response(client.generate(prompt)))
    except Exception as exc:
        logger.warning(f"chat_parse_fallback: reason={exc.__class__.__name__}")
        return fallback_parse_transaction(message)

    if parsed.category not in categories_for(parsed.type):
        parsed = parsed.model_copy(
            update={"category": find_best_category(parsed.description, parsed.type)}
        )
    return parsed


UNREGISTERED_REPLY = (
    "Welcome to FinWise! 🤖\n\n"
    "To get started, please register your phone number in the FinWise app.\n\n"
    "Available commands:\n"
    '• "balance" - Check your total balance\n'
    '• "expenses" - View your expenses\n'
    '• "accounts" - List all your accounts\n'
    '• "help" - Show this help message\n'
    '• "spend 2000 in food" - Add expense\n'
    '• "earned 10000 salary" - Add income'
)

UNKNOWN_REPLY = (
    "❓ I didn't understand that command.\n\n"
    "*Try these examples:*\n"
    '• "spend 2000 in food"\n'
    '• "paid 500 for groceries"\n'
    '• "earned 10000 salary"\n'
    '• "received 5000 payment"\n\n'
    'Type "help" to see all available commands.'
)


class ChatService:
    def __init__(
        self,
        session: Session,
        client: Optional[TextGenerator] = None,
        currency_symbol: str = "₹",
    ) -> None:
        self.session = session
        self.client = client
        self.currency_symbol = currency_symbol

    def money(self, cents: int) -> str:
        return format_amount(cents, self.currency_symbol)

    def handle(self, phone: str, message: Optional[str]) -> str:
        user = UserService(self.session).find_by_phone(normalize_phone(phone))
        if user is None:
            return UNREGISTERED_REPLY

        text = (message or "").strip()
        command = text.lower()
        if command in ("", "help", "hi", "hello"):
            return self._help(user)
        if command in ("balance", "bal"):
            return self._balance(user)
        if command in ("expenses", "expense"):
            return self._expenses(user)
        if command in ("accounts", "account"):
            return self._accounts(user)
        if command in ("recent", "transactions"):
            return self._recent(user)
        return self._add_transaction(user, text)

    def _help(self, user: User) -> str:
        return (
            f"Hi {user.name or 'there'}! 👋\n\n"
            "Welcome to FinWise WhatsApp Bot!\n\n"
            "*Available Commands:*\n"
            '• "balance" - Check your total balance\n'
            '• "expenses" - View your expenses\n'
            '• "accounts" - List all your accounts\n'
            '• "recent" - Show recent transactions\n'
            '• "help" - Show this help message\n\n'
            "*Add Transactions:*\n"
            '• "spend 2000 in food" - Add expense\n'
            '• "paid 500 for groceries" - Add expense\n'
            '• "earned 10000 salary" - Add income\n'
            '• "received 5000 payment" - Add income'
        )

    def _balance(self, user: User) -> str:
        accounts = AccountService(self.session, user.id).list_all()
        total = sum(account.balance_cents for account in accounts)
        lines = "\n".join(f"• {a.name}: {self.money(a.balance_cents)}" for a in accounts)
        return (
            "💰 *Your Balance Summary*\n\n"
            f"Total Balance: {self.money(total)}\n\n"
            f"*Account Details:*\n{lines}"
        )

    def _expenses(self, user: User) -> str:
        txns = TransactionService(self.session, user.id).recent(10, type=TransactionType.expense)
        total = sum(t.amount_cents for t in txns)
        lines = "\n".join(
            f"• {t.description or t.category}: {self.money(t.amount_cents)} ({t.account.name})"
            for t in txns
        )
        return (
            "💸 *Your Expenses*\n\n"
            f"Total Expenses: {self.money(total)}\n\n"
            f"*Recent Expenses:*\n{lines}"
        )

    def _accounts(self, user: User) -> str:
        accounts = AccountService(self.session, user.id).list_all()
        lines = "\n".join(
            f"• {a.name}{' (default)' if a.is_default else ''}: {self.money(a.balance_cents)}"
            for a in accounts
        )
        return f"🏦 *Your Accounts*\n\n{lines}"

    def _recent(self, user: User) -> str:
        txns = TransactionService(self.session, user.id).recent(5)
        lines = "\n".join(
            f"• {'💸' if t.type == TransactionType.expense else '💰'} "
            f"{t.description or t.category}: {self.money(t.amount_cents)} ({t.account.name})"
            for t in txns
        )
        return f"📊 *Recent Transactions*\n\n{lines}"

    def _add_transaction(self, user: User, text: str) -> str:
        parsed = parse_transaction_message(text, self.client)
        if parsed is None:
            return UNKNOWN_REPLY

        accounts_service = AccountService(self.session, user.id)
        accounts = accounts_service.list_all()
        if not accounts:
            return "❌ No accounts found. Please create an account first in the FinWise app."
        account = accounts_service.default_account() or accounts[-1]

        now = local_now()
        try:
            TransactionService(self.session, user.id).create(
                TransactionIn(
                    account_id=account.id,
                    type=parsed.type,
                    amount_cents=parsed.amount_cents,
                    description=parsed.description,
                    date=now.date(),
                    category=parsed.category,
                ),
                occurred_at=now,
            )
        except (ValueError, LedgerWriteError, ValidationError):
            logger.exception(f"chat_transaction_failed: user_id={user.id}")
            return "❌ Failed to add transaction. Please try again or check your account setup."

        self.session.refresh(account)
        is_expense = parsed.type == TransactionType.expense
        amount = self.money(parsed.amount_cents)
        return (
            f"{'💸' if is_expense else '💰'} *Transaction Added Successfully!*\n\n"
            f"*{parsed.description}*\n"
            f"Amount: {amount}\n"
            f"Type: {parsed.type.value}\n"
            f"Account: {account.name}\n"
            f"Balance: {self.money(account.balance_cents)}\n\n"
            f"You {'spent' if is_expense else 'earned'} {amount} for {parsed.description.lower()}"
        )
