from __future__ import annotations
from typing import AsyncIterator, List, Optional

from .context import ContextPolicy, ContextWindowManager
from .models import Message
from .orchestrator import StreamOrchestrator, Turn, TurnResult

INTERRUPTED_MARKER = "\n\n[stream interrupted]"


class ChatSession:
    """
    Conversation layer over the orchestrator: keeps the history, trims it to the
    active model's context window and stores partial replies tagged as interrupted.
    """

    def __init__(self, orchestrator: StreamOrchestrator, context: Optional[dict] = None):
        self.orchestrator = orchestrator
        self.history: List[Message] = []
        self.context_cfg = context
        self.last_turn: Optional[Turn] = None

    def _policy(self, model: str) -> ContextPolicy:
        ctx = self.context_cfg or {}
        kwargs = {
            "response_reserve_tokens": int(ctx.get("response_reserve_tokens", 1024)),
            "always_keep_last_n": int(ctx.get("always_keep_last_n", 6)),
        }
        if ctx.get("max_input_tokens"):
            return ContextPolicy(max_input_tokens=int(ctx["max_input_tokens"]), **kwargs)
        return ContextPolicy.for_model(model, **kwargs)

    def _outgoing_history(self, user_text: str) -> List[Message]:
        if self.context_cfg is None:
            return list(self.history)
        model = self.orchestrator.registry.settings.model_name
        mgr = ContextWindowManager(self._policy(model), model_hint=model)
        trimmed = mgr.apply(self.history + [Message("user", user_text)])
        return trimmed[:-1]          # the new user turn travels separately

    def _finish(self, user_text: str, turn: Turn) -> None:
        self.history.append(Message("user", user_text))
        if turn.interrupted:
            self.history.append(Message("assistant", turn.text + INTERRUPTED_MARKER))
        elif turn.text:
            self.history.append(Message("assistant", turn.text))

    async def run_turn(self, user_text: str) -> TurnResult:
        turn = self.orchestrator.start(user_text, self._outgoing_history(user_text))
        self.last_turn = turn
        try:
            return await turn.run()
        finally:
            self._finish(user_text, turn)

    async def run_turn_stream(self, user_text: str) -> AsyncIterator[str]:
        turn = self.orchestrator.start(user_text, self._outgoing_history(user_text))
        self.last_turn = turn
        gen = turn.chunks()
        try:
            async for piece in gen:
                yield piece
        finally:
            await gen.aclose()
            self._finish(user_text, turn)

    def clear(self) -> None:
        self.history.clear()
        self.last_turn = None
