# storefront/llm_client.py
"""
Unified LLM client for Azure OpenAI or OpenAI API.
Usage:
    from storefront.llm_client import get_client, complete
"""

import logging
import os

import openai
from dotenv import load_dotenv
from openai import AzureOpenAI, OpenAI

from storefront.runtime.errors import UpstreamUnavailable

# Load .env automatically
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_MODEL = "gpt-4o-mini"

# Connection-level failures; a 4xx from the API is a caller bug and propagates as is.
_UNAVAILABLE = (openai.APIConnectionError, openai.APITimeoutError, openai.InternalServerError, openai.RateLimitError)


def get_client():
    """Return an OpenAI client object (Azure or regular)."""
    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    api_key = os.getenv("AZURE_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
    if endpoint and api_key:
        # Azure mode
        api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        return AzureOpenAI(azure_endpoint=endpoint, api_key=api_key, api_version=api_version)
    elif api_key:
        base_url = os.getenv("OPENAI_BASE_URL")
        return OpenAI(api_key=api_key, base_url=base_url)
    else:
        raise UpstreamUnavailable("No OpenAI or Azure OpenAI credentials found.")


def _model(model=None):
    return os.getenv("AZURE_OPENAI_DEPLOYMENT") or model or os.getenv("SA_COMPLETION_MODEL") or DEFAULT_COMPLETION_MODEL


def complete(system_prompt, user_prompt, model=None, temperature=0.2, json_mode=True):
    """
    One chat completion with a system and a user message.
    Returns the raw message text; parsing is left to the caller.
    """
    client = get_client()
    kwargs = {
        "model": _model(model),
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": temperature,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    try:
        response = client.chat.completions.create(**kwargs)
    except _UNAVAILABLE as e:
        logger.error("[LLM] completion service unavailable: %s", e)
        raise UpstreamUnavailable(str(e)) from e
    return response.choices[0].message.content or ""

