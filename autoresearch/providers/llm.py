import asyncio
from functools import partial
from typing import Dict, List, Optional

from openai import OpenAI

from autoresearch.config import settings

_client: Optional[OpenAI] = None


def get_client() -> OpenAI:
    """Shared OpenAI client, created on first use."""
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


async def complete(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    json_mode: bool = False,
    max_tokens: Optional[int] = None,
) -> str:
    """Run a chat completion off the event loop and return the message text."""
    kwargs = {"model": model or settings.OPENAI_MODEL, "messages": messages}
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    if max_tokens:
        kwargs["max_tokens"] = max_tokens

    # the OpenAI client is blocking, so we run it in an executor
    loop = asyncio.get_event_loop()
    response = await loop.run_in_executor(
        None, partial(get_client().chat.completions.create, **kwargs)
    )
    return response.choices[0].message.content or ""
