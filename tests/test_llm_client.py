import os
from unittest.mock import patch

import pytest

from conceptkb.utils.config import Config, LLMConfig
from conceptkb.utils.llm_client import (
    create_anthropic_client,
    create_llm_client,
    create_openai_client,
)


@pytest.fixture
def mock_openai():
    with patch("conceptkb.utils.llm_client.OpenAI") as mock:
        yield mock


@pytest.fixture
def mock_anthropic():
    with patch("conceptkb.utils.llm_client.anthropic.Anthropic") as mock:
        yield mock


def test_create_client_defaults(mock_openai):
    # Ensure no env vars interfere
    with patch.dict(os.environ, {}, clear=True):
        create_openai_client()
        mock_openai.assert_called_once()
        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs.get("api_key") is None
        assert call_kwargs.get("base_url") is None
        assert call_kwargs.get("max_retries") == 2


def test_create_client_explicit_args(mock_openai):
    create_openai_client(
        api_key="sk-explicit",
        base_url="https://explicit.com",
        timeout=30.0,
        max_retries=5,
    )

    call_kwargs = mock_openai.call_args.kwargs
    assert call_kwargs["api_key"] == "sk-explicit"
    assert call_kwargs["base_url"] == "https://explicit.com"
    assert call_kwargs["timeout"] == 30.0
    assert call_kwargs["max_retries"] == 5


def test_create_client_env_vars(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client()

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-env"
        assert call_kwargs["base_url"] == "https://env.com"


def test_create_client_args_override_env(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client(api_key="sk-override", base_url="https://override.com")

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-override"
        assert call_kwargs["base_url"] == "https://override.com"


def test_create_anthropic_client_env_key(mock_anthropic):
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-env"}, clear=True):
        create_anthropic_client(timeout=20)

        call_kwargs = mock_anthropic.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-ant-env"
        assert call_kwargs["timeout"] == 20
        assert "base_url" not in call_kwargs


def test_create_llm_client_follows_provider(mock_openai, mock_anthropic):
    anthropic_config = Config(
        llm=LLMConfig(provider="anthropic", base_url="https://proxy.local"),
        anthropic_api_key="sk-ant-config",
    )

    create_llm_client(anthropic_config)

    mock_anthropic.assert_called_once()
    mock_openai.assert_not_called()
    call_kwargs = mock_anthropic.call_args.kwargs
    assert call_kwargs["api_key"] == "sk-ant-config"
    assert call_kwargs["base_url"] == "https://proxy.local"

    create_llm_client(Config(llm=LLMConfig(provider="openai"), openai_api_key="sk-config"))

    assert mock_openai.call_args.kwargs["api_key"] == "sk-config"
