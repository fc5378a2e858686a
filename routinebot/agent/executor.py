"""Agent boundary — what a firing routine calls to turn a prompt into text."""

from __future__ import annotations

import json
from typing import Any, Protocol

from langchain_core.messages import AIMessage
from loguru import logger
from pydantic import BaseModel

from routinebot.core.config.schema import Config
from routinebot.core.providers import litellm as llm_provider
from routinebot.core.providers.litellm import setup_provider

DEFAULT_SYSTEM_PROMPT = (
    "You are a personal assistant running a scheduled routine. "
    "Answer the task directly and concisely. You can manage routines, "
    "calendar events and tasks with your tools. "
    "If there is nothing worth reporting, answer exactly SKIP."
)

MAX_TOOL_ITERATIONS = 10


class AgentResponse(BaseModel):
    response: str
    tokens: int = 0


class AgentBoundary(Protocol):
    """Anything that can execute a prompt for a session.

    Must be safe to call concurrently for different sessions.
    """

    async def execute(
        self,
        prompt: str,
        session_id: str,
        context_messages: list[dict[str, Any]],
    ) -> AgentResponse: ...


def build_tool_definitions(tools: list) -> list[dict[str, Any]]:
    """Convert LangChain tools to OpenAI function format."""
    defs = []
    for tool in tools:
        schema = tool.args_schema.model_json_schema() if tool.args_schema else {}
        defs.append(
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": schema,
                },
            }
        )
    return defs


def _assistant_dict(msg: AIMessage) -> dict[str, Any]:
    d: dict[str, Any] = {"role": "assistant", "content": msg.content}
    if msg.tool_calls:
        d["tool_calls"] = [
            {
                "id": tc["id"],
                "type": "function",
                "function": {"name": tc["name"], "arguments": json.dumps(tc["args"])},
            }
            for tc in msg.tool_calls
        ]
    return d


class LiteLLMAgent:
    """Agent over LiteLLM for scheduled routines.

    Runs a reason → tools loop: while the model asks for tool calls they are
    executed and fed back, up to ``MAX_TOOL_ITERATIONS`` rounds, after which
    a final answer is forced. Tools read the session from the session
    context, which the dispatcher sets around each firing.

    Parameters
    ----------
    config : Config
        Application config; API keys are exported at construction.
    tools : list, optional
        LangChain tools offered to the model. Empty = plain completion.
    model : str, optional
        Model override. Defaults to config.assistant.model.
    """

    def __init__(
        self,
        config: Config,
        tools: list | None = None,
        model: str | None = None,
    ):
        self.config = config
        self.model = model or config.assistant.model
        self.system_prompt = config.assistant.system_prompt or DEFAULT_SYSTEM_PROMPT
        self.tools: list = []
        self.bind_tools(tools or [])
        setup_provider(config)

    def bind_tools(self, tools: list) -> None:
        """Replace the tool set (tools often need the scheduler built after us)."""
        self.tools = list(tools)
        self._tool_map = {t.name: t for t in self.tools}
        self._tool_defs = build_tool_definitions(self.tools) if self.tools else None

    async def execute(
        self,
        prompt: str,
        session_id: str,
        context_messages: list[dict[str, Any]],
    ) -> AgentResponse:
        # ``prompt`` already carries the recent conversation
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]
        logger.debug(
            f"Agent call: session={session_id} model={self.model}"
            f" context={len(context_messages)} tools={len(self.tools)}"
        )

        tokens = 0
        iteration = 0
        while True:
            use_tools = self._tool_defs
            if iteration >= MAX_TOOL_ITERATIONS:
                use_tools = None
                messages.append({
                    "role": "user",
                    "content": "Give your final answer now. Do not make any more tool calls.",
                })

            reply = await llm_provider.achat(
                messages,
                model=self.model,
                tools=use_tools,
                temperature=self.config.assistant.temperature,
                max_tokens=self.config.assistant.max_tokens,
                api_base=self.config.get_api_base(self.model),
                api_key=self.config.get_api_key(self.model),
            )
            usage = reply.response_metadata.get("usage", {})
            tokens += usage.get("total_tokens", 0) or 0
            iteration += 1

            if not reply.tool_calls or use_tools is None:
                return AgentResponse(response=str(reply.content), tokens=tokens)

            messages.append(_assistant_dict(reply))
            for call in reply.tool_calls:
                result = await self._run_tool(call)
                messages.append(
                    {"role": "tool", "tool_call_id": call["id"], "content": result}
                )

    async def _run_tool(self, call: dict[str, Any]) -> str:
        tool = self._tool_map.get(call["name"])
        if tool is None:
            return f"Tool '{call['name']}' not found"
        try:
            result = await tool.ainvoke(call["args"])
        except Exception as e:
            logger.warning(f"Tool {call['name']} failed: {e}")
            return f"Tool error: {e}"
        logger.debug(f"Tool {call['name']} → {str(result)[:100]}")
        return str(result)
