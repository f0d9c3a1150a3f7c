# respec_engine/history_cache.py

import threading

from langchain_community.chat_message_histories.in_memory import ChatMessageHistory
from langchain_core.messages import AIMessage, HumanMessage

from respec_engine.settings import HISTORY_MAX_TOKENS


class ResolutionHistory:
    """
    In-memory chat history of one session's conflict-resolution turns with:
    - approximate token cap (chars/4 heuristic), oldest turns dropped first
    - thread-safe operations
    """

    def __init__(self, max_tokens: int = HISTORY_MAX_TOKENS):
        self.max_tokens = max_tokens
        self._lock = threading.Lock()
        self._history = ChatMessageHistory()

    def __len__(self) -> int:
        with self._lock:
            return len(self._history.messages)

    def _approx_tokens(self, text: str) -> int:
        return max(1, len(text) // 4)

    def snapshot(self) -> list:
        """
        Returns a COPY of the current message list for LLM input, pruned to cap.
        """
        with self._lock:
            self._prune_to_token_cap_unlocked()
            return list(self._history.messages)

    def append_turn(self, user_text: str, assistant_text: str) -> None:
        with self._lock:
            self._history.add_message(HumanMessage(content=user_text or ""))
            self._history.add_message(AIMessage(content=assistant_text or ""))
            self._prune_to_token_cap_unlocked()

    def clear(self) -> None:
        with self._lock:
            self._history.clear()

    def _prune_to_token_cap_unlocked(self) -> None:
        msgs = list(self._history.messages)

        tokens = []
        total = 0
        for m in msgs:
            t = self._approx_tokens(str(getattr(m, "content", "") or ""))
            tokens.append(t)
            total += t

        if total <= self.max_tokens:
            return

        # drop whole turns from the front until under cap
        i = 0
        while i < len(msgs) and total > self.max_tokens:
            total -= tokens[i]
            i += 1
        if i % 2 == 1 and i < len(msgs):
            i += 1

        self._history.messages = msgs[i:]
