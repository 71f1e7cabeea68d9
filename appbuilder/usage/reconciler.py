import asyncio
import logging
import math
from typing import Protocol

from appbuilder.errors import CreditError
from appbuilder.models import CreditLedgerEntry, TokenUsage
from appbuilder.usage.ledger import LedgerStore


logger = logging.getLogger("appbuilder.usage")


SYSTEM_OVERHEAD_TOKENS = 800
BUFFER_RATIO = 0.2
MIN_ESTIMATE_TOKENS = 1000

FULL_APP_OUTPUT = 4000
COMPONENT_EDIT_OUTPUT = 1500
SIMPLE_EDIT_OUTPUT = 800
DEFAULT_OUTPUT = 2500

FULL_APP_KEYWORDS = (
    "build", "create", "generate", "make", "develop", "app", "application",
    "website", "web app", "react app", "vue app", "angular app", "full stack",
    "todo", "ecommerce", "blog", "portfolio", "dashboard", "admin panel",
    "landing page",
)
COMPONENT_EDIT_KEYWORDS = (
    "edit", "modify", "update", "change", "fix", "improve", "component",
    "button", "form", "header", "footer", "add", "remove", "style", "styling",
    "css", "design",
)
SIMPLE_EDIT_KEYWORDS = (
    "text", "color", "size", "font", "margin", "padding", "border",
    "background", "typo", "spelling",
)


def output_estimate(prompt: str) -> int:
    lower = prompt.lower()
    if any(k in lower for k in FULL_APP_KEYWORDS):
        return FULL_APP_OUTPUT
    if any(k in lower for k in COMPONENT_EDIT_KEYWORDS):
        return COMPONENT_EDIT_OUTPUT
    if any(k in lower for k in SIMPLE_EDIT_KEYWORDS):
        return SIMPLE_EDIT_OUTPUT
    return DEFAULT_OUTPUT


def estimate(prompt: str) -> int:
    """Pre-flight token estimate for a prompt."""
    base = math.ceil(len(prompt) / 4) + SYSTEM_OVERHEAD_TOKENS + output_estimate(prompt)
    total = base + math.ceil(base * BUFFER_RATIO)
    return max(MIN_ESTIMATE_TOKENS, total)


class Billable(Protocol):
    """What the reconciler needs to know about a finished generation."""

    session_id: str
    user_id: str
    prompt: str
    token_usage: TokenUsage | None
    estimated_tokens: int | None

    @property
    def produced_files(self) -> bool: ...


class UsageReconciler:
    """Checks balances before a generation and deducts credits after it.

    Deduction happens once per session id; later calls return the recorded
    entry unchanged.
    """

    def __init__(self, ledger: LedgerStore, default_balance: int = 0):
        self.ledger = ledger
        self.default_balance = default_balance
        self._settled: dict[str, CreditLedgerEntry] = {}
        self._lock = asyncio.Lock()

    def estimate(self, prompt: str) -> int:
        return estimate(prompt)

    async def balance(self, user_id: str) -> int:
        value = await self.ledger.balance(user_id)
        if value is None:
            await self.ledger.set_balance(user_id, self.default_balance)
            return self.default_balance
        return value

    async def check(self, user_id: str, prompt: str) -> int:
        """Return the estimate, or raise CreditError when the balance cannot cover it."""
        required = estimate(prompt)
        available = await self.balance(user_id)
        if available < required:
            logger.info("credit check failed user=%s required=%d balance=%d", user_id, required, available)
            raise CreditError(balance=available, required=required)
        return required

    async def top_up(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("top-up amount must be positive")
        async with self._lock:
            before = await self.balance(user_id)
            after = before + amount
            await self.ledger.set_balance(user_id, after)
            await self.ledger.append(
                CreditLedgerEntry(
                    user_id=user_id,
                    session_id="",
                    operation="top_up",
                    estimated_tokens=0,
                    actual_tokens=None,
                    balance_before=before,
                    balance_after=after,
                )
            )
            return after

    async def reconcile(self, session: Billable) -> CreditLedgerEntry:
        async with self._lock:
            settled = self._settled.get(session.session_id)
            if settled is not None:
                return settled

            estimated = session.estimated_tokens or estimate(session.prompt)
            actual = session.token_usage.total if session.token_usage is not None else None
            if not session.produced_files:
                amount = 0
            else:
                amount = actual if actual is not None else estimated

            before = await self.balance(session.user_id)
            # Actual usage is charged in full; any shortfall stays on the books as debt.
            after = before - amount
            if after < 0:
                logger.warning(
                    "deduction of %d exceeds balance %d for user %s, recording debt of %d",
                    amount,
                    before,
                    session.user_id,
                    -after,
                )
            await self.ledger.set_balance(session.user_id, after)
            entry = CreditLedgerEntry(
                user_id=session.user_id,
                session_id=session.session_id,
                operation="generation",
                estimated_tokens=estimated,
                actual_tokens=actual,
                balance_before=before,
                balance_after=after,
            )
            await self.ledger.append(entry)
            self._settled[session.session_id] = entry
            logger.info(
                "deducted %d credits session=%s (actual=%s estimate=%d)",
                before - after,
                session.session_id,
                actual,
                estimated,
            )
            return entry
