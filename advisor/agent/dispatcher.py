"""
Tool Dispatcher

Turns an LLM decision into executed actions and one combined reply.

Tool calls are executed one at a time and independently: an unknown tool
or malformed arguments fail only that call. Rule actions run as a chain
where every step sees the results of the steps before it; nothing is
rolled back.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..common.errors import AdvisorError, ErrorKind, InvalidArgumentsError, classify
from ..common.llm_client import LLMClient, LLMResponse, ToolCall
from ..common.llm_utils import parse_tool_arguments, strip_think_tags
from ..common.schemas import Event, RuleAction, Task
from ..common.storage import Storage
from ..integrations import Integrations
from ..retriever import RetrievalContext, RetrievalService
from .task_executor import TaskExecutor
from .task_queue import TaskOutcome
from .tools import TOOL_DEFINITIONS, TOOL_HANDLERS, ToolContext, ToolResult

logger = logging.getLogger("advisor.agent.dispatcher")


SYSTEM_PROMPT = """You are an AI assistant for a financial advisor. You help manage client relationships using the advisor's emails, calendar and HubSpot CRM.

Answer from the context provided. If the context does not contain the answer, say so plainly. Be concise and professional.
When the advisor asks you to do something, use the available tools. Never claim an action succeeded unless a tool confirmed it."""

RULE_ACTION_PROMPT = """A standing instruction fired and you must carry out one of its actions.

Instruction: {instruction}
Triggering {event_type} event:
{event_data}

Action to perform now: {action_type} - {description}
Suggested parameters: {parameters}

Results of earlier actions in this rule:
{previous}

Call exactly the tool needed for this action."""


@dataclass
class DispatchResult:
    """Combined outcome of one dispatcher call"""
    text: str
    results: List[ToolResult] = field(default_factory=list)
    error: Optional[ErrorKind] = None

    @property
    def tasks(self) -> List[Task]:
        return [r.task for r in self.results if r.task is not None]

    @property
    def successes(self) -> List[ToolResult]:
        return [r for r in self.results if r.ok]

    @property
    def failures(self) -> List[ToolResult]:
        return [r for r in self.results if not r.ok]


def format_results(results: List[ToolResult], preamble: str = "") -> str:
    """Successes first (completed, then deferred to tasks), then errors."""
    sections = [preamble] if preamble else []
    completed = [r for r in results if r.ok and not r.data.get("deferred")]
    deferred = [r for r in results if r.ok and r.data.get("deferred")]
    failures = [r for r in results if not r.ok]
    if completed:
        sections.append("Completed:\n" + "\n".join(f"- {r.message}" for r in completed))
    if deferred:
        sections.append("Created tasks:\n" + "\n".join(f"- {r.message}" for r in deferred))
    if failures:
        sections.append("Errors:\n" + "\n".join(f"- {r.name}: {r.message}" for r in failures))
    return "\n\n".join(sections)


def fallback_response(context: Optional[RetrievalContext]) -> str:
    """Reply used when the LLM cannot be reached."""
    if context is None or context.is_empty:
        return (
            "I'm having trouble reaching the language model right now and found no "
            "related emails, contacts or notes. Please try again in a moment."
        )
    return (
        f"I'm having trouble reaching the language model right now. {context.summary_text} "
        "that may help; please try again in a moment."
    )


class ToolDispatcher:
    """
    Orchestrates the LLM and the tool table.

    Operations:
    - respond: plain grounded reply, no tools
    - respond_with_tools: reply that may invoke tools
    - execute_rule_actions: chained tool calls for a standing rule
    - execute_task: run a pending Task
    """

    def __init__(
        self,
        llm: LLMClient,
        integrations: Integrations,
        storage: Storage,
        retrieval: RetrievalService,
        tools: Optional[List[Dict[str, Any]]] = None,
    ):
        self._llm = llm
        self._integrations = integrations
        self._storage = storage
        self._retrieval = retrieval
        self._tools = tools if tools is not None else TOOL_DEFINITIONS
        self._executor = TaskExecutor(integrations, llm=llm, rule_runner=self.execute_rule_actions)

    def _context(self, user_id: str) -> ToolContext:
        return ToolContext(
            user_id=user_id,
            integrations=self._integrations,
            storage=self._storage,
            retrieval=self._retrieval,
        )

    def _build_messages(
        self,
        text: str,
        context: Optional[RetrievalContext],
        history: Optional[List[Dict[str, str]]],
    ) -> List[Dict[str, str]]:
        messages = list(history or [])
        if context is not None:
            messages.append({"role": "user", "content": f"Context:\n{context.to_prompt()}\n\nRequest: {text}"})
        else:
            messages.append({"role": "user", "content": text})
        return messages

    async def _chat(self, messages, tools=None) -> LLMResponse:
        return await asyncio.to_thread(self._llm.chat, messages, tools, system=SYSTEM_PROMPT)

    async def respond(
        self,
        text: str,
        context: Optional[RetrievalContext] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> DispatchResult:
        """Grounded reply without tools. Falls back to a canned reply on LLM failure."""
        try:
            response = await self._chat(self._build_messages(text, context, history))
        except Exception as e:
            kind = classify(e)
            logger.warning("LLM reply failed (%s): %s", kind.value, e)
            return DispatchResult(text=fallback_response(context), error=kind)
        return DispatchResult(text=strip_think_tags(response.content) or fallback_response(context))

    async def respond_with_tools(
        self,
        user_id: str,
        text: str,
        context: Optional[RetrievalContext] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> DispatchResult:
        """
        Let the LLM choose tools for a request and run them in order.

        Args:
            user_id: Whose integrations and storage the tools act on
            text: The user's request
            context: Retrieval context for grounding
            history: Prior exchanges as chat messages

        Returns:
            DispatchResult with a combined reply and per-call results
        """
        try:
            response = await self._chat(self._build_messages(text, context, history), self._tools)
        except Exception as e:
            kind = classify(e)
            logger.warning("LLM tool selection failed (%s): %s", kind.value, e)
            return DispatchResult(text=fallback_response(context), error=kind)

        content = strip_think_tags(response.content)
        if not response.has_tool_calls:
            return DispatchResult(text=content or fallback_response(context))

        results = await self.execute_tool_calls(user_id, response.tool_calls)
        return DispatchResult(text=format_results(results, preamble=content), results=results)

    async def execute_tool_calls(self, user_id: str, calls: List[ToolCall]) -> List[ToolResult]:
        """Execute tool calls sequentially; each failure stays inline."""
        ctx = self._context(user_id)
        results = []
        for call in calls:
            results.append(await self._execute_one(ctx, call))
        return results

    async def _execute_one(self, ctx: ToolContext, call: ToolCall) -> ToolResult:
        spec = TOOL_HANDLERS.get(call.name)
        if spec is None:
            return ToolResult.failure(call.name, ErrorKind.INVALID_ARGUMENTS, f"Unknown tool: {call.name}")

        try:
            args = spec.args_model.model_validate(parse_tool_arguments(call.arguments))
        except InvalidArgumentsError as e:
            logger.warning("Invalid arguments for %s: %s", call.name, e)
            return ToolResult.failure(call.name, ErrorKind.INVALID_ARGUMENTS, str(e))
        except ValidationError as e:
            logger.warning("Invalid arguments for %s: %s", call.name, e)
            return ToolResult.failure(call.name, ErrorKind.INVALID_ARGUMENTS, f"Invalid tool arguments: {_brief(e)}")

        try:
            return await spec.handler(ctx, args)
        except AdvisorError as e:
            logger.warning("Tool %s failed (%s): %s", call.name, e.kind.value, e)
            return ToolResult.failure(call.name, e.kind, str(e))
        except Exception as e:
            logger.error("Tool %s raised unexpectedly: %s", call.name, e, exc_info=True)
            return ToolResult.failure(call.name, classify(e), str(e))

    async def execute_rule_actions(
        self,
        user_id: str,
        actions: List[RuleAction],
        event: Event,
        instruction: str,
    ) -> List[ToolResult]:
        """
        Run a rule's actions in order, feeding each result into the next prompt.

        A failed step is recorded and the chain continues; earlier steps are
        never undone.
        """
        ctx = self._context(user_id)
        results: List[ToolResult] = []
        for action in actions:
            previous = "\n".join(f"- {r.name}: {r.message}" for r in results) or "(none)"
            prompt = RULE_ACTION_PROMPT.format(
                instruction=instruction,
                event_type=event.type,
                event_data=json.dumps(event.data, default=str)[:2000],
                action_type=action.type,
                description=action.description,
                parameters=json.dumps(action.parameters, default=str),
                previous=previous,
            )
            try:
                response = await self._chat([{"role": "user", "content": prompt}], self._tools)
            except Exception as e:
                results.append(ToolResult.failure(action.type, classify(e), f"LLM unavailable: {e}"))
                continue

            if not response.has_tool_calls:
                results.append(ToolResult.failure(
                    action.type, ErrorKind.INVALID_ARGUMENTS,
                    strip_think_tags(response.content) or "No tool selected",
                ))
                continue

            for call in response.tool_calls:
                results.append(await self._execute_one(ctx, call))
        return results

    async def execute_task(self, task: Task) -> TaskOutcome:
        return await self._executor.execute(task)


def _brief(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc)
