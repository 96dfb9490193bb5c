"""LLM client factories.

Clients are built once by the caller and handed to the components that need
them, so tests can pass fakes and no module keeps a shared client around.
"""

import os
from typing import Any, Optional

import anthropic
from loguru import logger
from openai import OpenAI

from conceptkb.utils.config import Config


def _mask(key: Optional[str]) -> str:
    return f"{key[:4]}...{key[-4:]}" if key and len(key) > 8 else "None"


def create_openai_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 2,
    **kwargs: Any,
) -> OpenAI:
    """Create and configure an OpenAI client.

    Args:
        api_key: The API key. Falls back to OPENAI_API_KEY.
        base_url: The base URL. Falls back to OPENAI_BASE_URL.
        timeout: Request timeout in seconds.
        max_retries: Number of transport-level retries.
        **kwargs: Additional arguments to pass to the OpenAI constructor.

    Returns:
        Configured OpenAI client.
    """
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    final_base_url = base_url or os.getenv("OPENAI_BASE_URL")

    logger.debug(
        f"Creating OpenAI client: base_url={final_base_url}, "
        f"api_key={_mask(final_api_key)}, timeout={timeout}"
    )

    return OpenAI(
        api_key=final_api_key,
        base_url=final_base_url,
        timeout=timeout,
        max_retries=max_retries,
        **kwargs,
    )


def create_anthropic_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 2,
) -> anthropic.Anthropic:
    """Create an Anthropic client with the same resolution rules as OpenAI."""
    final_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

    logger.debug(f"Creating Anthropic client: base_url={base_url}, api_key={_mask(final_api_key)}")

    client_kwargs: dict[str, Any] = {"max_retries": max_retries}
    if final_api_key:
        client_kwargs["api_key"] = final_api_key
    if base_url:
        client_kwargs["base_url"] = base_url
    if timeout is not None:
        client_kwargs["timeout"] = timeout
    return anthropic.Anthropic(**client_kwargs)


def create_llm_client(config: Config) -> Any:
    """Build the chat client matching ``config.llm.provider``."""
    llm = config.llm
    if llm.provider == "anthropic":
        return create_anthropic_client(
            api_key=config.anthropic_api_key or None,
            base_url=llm.base_url,
            timeout=llm.timeout,
        )
    return create_openai_client(
        api_key=config.openai_api_key or None,
        base_url=llm.base_url,
        timeout=llm.timeout,
    )
