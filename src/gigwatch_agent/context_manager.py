"""Context manager — assembles budgeted prompts and compacts old history.

A prompt is the system prompt, the rolling summary (if any) and the most
recent contiguous run of visible messages that fits the token budget.
Compaction folds older messages into the summary and advances its cursor;
it never touches the most recent ``keep_recent`` messages.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field

from .conversation_store import ConversationStore
from .model_catalog import DEFAULT_CONTEXT_WINDOW, resolve_context_window
from .provider import ChatMessage, ChatRole
from .records import ConversationSummary, StoredMessage
from .summarizer import ContextSummarizer
from .telemetry import trace_compaction
from .token_estimator import TokenBudget, estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SCOPE = "global"
PROMPT_BUDGET_RATIO = 0.72
MIN_PROMPT_BUDGET = 1024
FIXED_OVERHEAD_TOKENS = 64
PER_MESSAGE_OVERHEAD_TOKENS = 12
RECENT_FETCH_LIMIT = 240

MIN_SUMMARIZE_MESSAGES = 20
KEEP_RECENT_UNSUMMARIZED = 10
MAX_SUMMARIZE_BATCH = 120
PENDING_PAGE_SIZE = 500

SUMMARY_PREAMBLE = "Long-term memory summary (condensed from earlier conversation):"


@dataclass
class PromptBuild:
    """Result of :meth:`ContextManager.build_prompt`."""

    messages: list[ChatMessage]
    model_context_window: int
    prompt_token_budget: int
    estimated_prompt_tokens: int
    included_message_ids: list[int] = field(default_factory=list)
    summary_until_message_id: int = 0


def prompt_budget_for(window: int) -> int:
    return max(MIN_PROMPT_BUDGET, math.floor(window * PROMPT_BUDGET_RATIO))


def fit_summary_block(summary_text: str, allowance: int) -> str:
    """Render the summary block within *allowance* tokens.

    An oversized summary keeps its most recent tail; the block is dropped
    when not even the preamble fits.
    """
    prefix = f"{SUMMARY_PREAMBLE}\n"
    block = prefix + summary_text
    if estimate_tokens(block) <= allowance:
        return block
    lo, hi = 0, len(summary_text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if estimate_tokens(prefix + summary_text[-mid:]) <= allowance:
            lo = mid
        else:
            hi = mid - 1
    if lo == 0:
        return ""
    return prefix + summary_text[-lo:]


def to_chat_message(message: StoredMessage) -> ChatMessage:
    """Map a stored message onto a prompt role.

    Stored tool output is replayed as assistant text; tool-call linkage only
    exists inside a single turn.
    """
    if message.role in (ChatRole.ASSISTANT, ChatRole.TOOL):
        role = ChatRole.ASSISTANT
    elif message.role == ChatRole.SYSTEM:
        role = ChatRole.SYSTEM
    else:
        role = ChatRole.USER
    return ChatMessage(role=role, content=message.content)


class ContextManager:
    """Builds prompts for the runtime and keeps the rolling summary current."""

    def __init__(
        self,
        store: ConversationStore,
        summarizer: ContextSummarizer,
        scope: str = SUMMARY_SCOPE,
        context_windows: dict[str, int] | None = None,
        default_window: int = DEFAULT_CONTEXT_WINDOW,
        min_summarize: int = MIN_SUMMARIZE_MESSAGES,
        keep_recent: int = KEEP_RECENT_UNSUMMARIZED,
        max_batch: int = MAX_SUMMARIZE_BATCH,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._scope = scope
        self._windows = context_windows
        self._default_window = default_window
        self._min_summarize = min_summarize
        self._keep_recent = keep_recent
        self._max_batch = max_batch
        self._compaction_lock = asyncio.Lock()

    @property
    def scope(self) -> str:
        return self._scope

    def context_window_for(self, model: str | None) -> int:
        return resolve_context_window(model, self._windows, self._default_window)

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    async def build_prompt(
        self,
        cutoff_message_id: int,
        system_prompt: str,
        model: str | None = None,
    ) -> PromptBuild:
        """Assemble the prompt for a turn triggered by *cutoff_message_id*.

        Only messages with ``id <= cutoff_message_id`` are considered, so the
        result does not change when later messages are written.
        """
        summary = self._store.get_summary(self._scope)
        candidates = self._store.list_visible_before_or_at(cutoff_message_id, RECENT_FETCH_LIMIT)

        window = self.context_window_for(model)
        budget = TokenBudget(prompt_budget_for(window))

        base = TokenBudget.cost(system_prompt, FIXED_OVERHEAD_TOKENS)
        summary_block = ""
        if summary.summary_text:
            allowance = max(0, (budget.limit - base) // 2)
            summary_block = fit_summary_block(summary.summary_text, allowance)
        budget.charge(base + TokenBudget.cost(summary_block))
        if budget.overflow:
            logger.warning(
                "System prompt alone exceeds the %d-token budget for %s",
                budget.limit,
                model,
            )

        selected: list[StoredMessage] = []
        for message in reversed(candidates):
            cost = TokenBudget.cost(message.content, PER_MESSAGE_OVERHEAD_TOKENS)
            if not budget.fits(cost):
                if not selected:
                    # A lone oversized newest message is still sent.
                    selected.append(message)
                    budget.charge(cost)
                break
            selected.append(message)
            budget.charge(cost)
        selected.reverse()

        messages = [ChatMessage(role=ChatRole.SYSTEM, content=system_prompt)]
        if summary_block:
            messages.append(ChatMessage(role=ChatRole.SYSTEM, content=summary_block))
        messages.extend(to_chat_message(m) for m in selected)

        if budget.overflow:
            logger.info("Prompt over budget by %d tokens", budget.overflow)

        return PromptBuild(
            messages=messages,
            model_context_window=window,
            prompt_token_budget=budget.limit,
            estimated_prompt_tokens=budget.used,
            included_message_ids=[m.id for m in selected],
            summary_until_message_id=summary.until_message_id,
        )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def maybe_compact_history(self) -> ConversationSummary | None:
        """Fold one batch of old messages into the summary if enough are pending.

        Returns the updated summary, or ``None`` when nothing was folded.
        """
        async with self._compaction_lock:
            summary = self._store.get_summary(self._scope)
            pending = self._store.list_visible_after(summary.until_message_id, PENDING_PAGE_SIZE)
            foldable = len(pending) - self._keep_recent
            if foldable < self._min_summarize:
                return None

            chunk = pending[: min(foldable, self._max_batch)]
            with trace_compaction(self._scope):
                text = await self._summarizer.summarize(summary.summary_text, chunk)
            updated = self._store.upsert_summary(self._scope, chunk[-1].id, text)
            logger.info(
                "Compacted %d messages into %s summary (cursor %d -> %d)",
                len(chunk),
                self._scope,
                summary.until_message_id,
                updated.until_message_id,
            )
            return updated
