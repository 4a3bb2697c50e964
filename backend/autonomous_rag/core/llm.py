"""
LLM factory — returns the appropriate LangChain chat model based on LITELLM_MODE.

  proxy   → ChatOpenAI pointed at the LiteLLM proxy container (dev default)
  library → ChatLiteLLM using the litellm library in-process (production)

The decision layer only needs text in / text out, so it talks to the
TextGenerator protocol; LangChainTextGenerator adapts a chat model to it.
"""

from typing import Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from autonomous_rag.core.config import get_settings


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str: ...


def get_chat_model(
    *,
    model: str | None = None,
    streaming: bool = False,
    temperature: float = 0.1,
    max_tokens: int | None = None,
) -> BaseChatModel:
    """
    Return a configured chat model.

    Args:
        model:       Override the model name. Defaults to settings.decision_model.
        streaming:   Enable token-by-token streaming.
        temperature: Sampling temperature.
        max_tokens:  Completion token budget.
    """
    settings = get_settings()
    model_name = model or settings.decision_model

    if settings.litellm_mode == "library":
        from langchain_community.chat_models import ChatLiteLLM

        return ChatLiteLLM(
            model=model_name,
            streaming=streaming,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    else:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            base_url=settings.litellm_base_url,
            api_key=settings.litellm_master_key,
            model=model_name,
            streaming=streaming,
            temperature=temperature,
            max_tokens=max_tokens,
        )


class LangChainTextGenerator:
    """TextGenerator backed by get_chat_model()."""

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        llm = get_chat_model(model=model, temperature=temperature, max_tokens=max_tokens)
        runnable = llm.bind(response_format={"type": "json_object"}) if json_mode else llm
        response = await runnable.ainvoke([HumanMessage(content=prompt)])
        content = response.content
        if isinstance(content, list):
            # content blocks (multi-part responses)
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block) for block in content
            )
        return content or ""
