"""
LangGraph wiring for conversational tip entry parsing.

The compiled graph is stateless between requests (no checkpointer); the
only shared state lives in the RateLimiter and SpamDetector passed in.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

from langgraph.graph import END, START, StateGraph

from tipentry.config import llm_timeout_seconds
from tipentry.graph.nodes.conversational import (
	fallback_node,
	fallback_parse,
	make_guard_node,
	make_model_node,
	rejected_entry,
	sanitize_node,
	validate_node,
)
from tipentry.graph.state import AuditEvent, ParsedTipEntry, ParseState
from tipentry.llm import get_text_model
from tipentry.rate_limit import RateLimiter, SpamDetector
from tipentry.security import sanitize_ai_input

logger = logging.getLogger(__name__)


def _route_early_exit(state: ParseState) -> str:
	return "done" if state.entry is not None else "continue"


def _route_after_model(state: ParseState) -> str:
	if state.reply is not None and state.reply.ok:
		return "validate"
	return "fallback"


def build_parse_graph(
	get_model: Callable[[], Any],
	rate_limiter: Optional[RateLimiter] = None,
	spam_detector: Optional[SpamDetector] = None,
	timeout: Optional[float] = None,
) -> Any:
	"""Build and compile the sanitize -> guard -> model -> validate/fallback graph."""
	graph = StateGraph(ParseState)
	graph.add_node("sanitize", sanitize_node)
	graph.add_node("guard", make_guard_node(rate_limiter, spam_detector))
	graph.add_node(
		"call_model",
		make_model_node(get_model, timeout if timeout is not None else llm_timeout_seconds()),
	)
	graph.add_node("validate", validate_node)
	graph.add_node("fallback", fallback_node)

	graph.add_edge(START, "sanitize")
	graph.add_conditional_edges("sanitize", _route_early_exit, {"continue": "guard", "done": END})
	graph.add_conditional_edges("guard", _route_early_exit, {"continue": "call_model", "done": END})
	graph.add_conditional_edges(
		"call_model", _route_after_model, {"validate": "validate", "fallback": "fallback"}
	)
	graph.add_edge("validate", END)
	graph.add_edge("fallback", END)
	return graph.compile()


class ConversationalParser:
	"""Parses free-text shift descriptions into ParsedTipEntry objects.

	model: any chat model exposing ``ainvoke``. When omitted, a Gemini model is
	created on first use; without GOOGLE_API_KEY every request takes the regex
	fallback path.
	"""

	def __init__(
		self,
		model: Any = None,
		rate_limiter: Optional[RateLimiter] = None,
		spam_detector: Optional[SpamDetector] = None,
		timeout: Optional[float] = None,
	):
		self._model = model
		self.rate_limiter = rate_limiter
		self.spam_detector = spam_detector
		self._graph = build_parse_graph(self._get_model, rate_limiter, spam_detector, timeout)

	def _get_model(self) -> Any:
		if self._model is None:
			self._model = get_text_model()
		return self._model

	async def run(self, user_input: str, user_key: str = "anonymous") -> ParseState:
		"""Run the graph and return the final state, audit log included."""
		initial = ParseState(user_key=user_key or "anonymous", raw_input=user_input or "")
		result = await self._graph.ainvoke(initial)
		if isinstance(result, ParseState):
			return result
		return ParseState.model_validate(dict(result))

	async def parse_with_audit(
		self, user_input: str, user_key: str = "anonymous"
	) -> Tuple[ParsedTipEntry, List[AuditEvent]]:
		"""Parse one shift description and return the entry with the events behind it.

		Ordinary failures never raise. If the graph itself fails the entry comes
		from the local fallback and the audit log is empty.
		"""
		try:
			state = await self.run(user_input, user_key)
		except Exception:
			logger.exception("Parse graph failed; using local fallback")
			sanitized = sanitize_ai_input(user_input or "")
			if sanitized.blocked:
				return rejected_entry(sanitized.reason or ""), []
			return fallback_parse(sanitized.safe), []

		if state.entry is None:
			logger.error("Parse graph finished without an entry")
			return fallback_parse(state.sanitized.safe if state.sanitized else ""), state.audit_log
		return state.entry, state.audit_log

	async def parse(self, user_input: str, user_key: str = "anonymous") -> ParsedTipEntry:
		"""Parse one shift description. Ordinary failures never raise."""
		entry, _ = await self.parse_with_audit(user_input, user_key)
		return entry
