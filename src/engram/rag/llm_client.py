"""LiteLLM client wrapper with timeouts and API key validation.

All LLM + embedding calls route through this module. LiteLLM's built-in retry
is used for short transient blips (num_retries); anything that still fails is
raised as TransientProviderError so the caller can mark the file or run failed
and retry on its next cycle.
"""

from __future__ import annotations

import os

import litellm

from engram.errors import TransientProviderError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def provider_of(model: str) -> str:
    """Return the provider prefix of a LiteLLM model string ('openai' if none)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def has_api_key(model: str) -> bool:
    """True if the API key env var required by *model* is set (or none is needed)."""
    env_var = _PROVIDER_ENV.get(provider_of(model))
    if env_var is None:
        return True
    return bool(os.getenv(env_var))


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    if has_api_key(model):
        return
    provider = provider_of(model)
    raise EnvironmentError(
        f"API key not found for provider '{provider}'. "
        f"Set the {_PROVIDER_ENV[provider]} environment variable."
    )


def complete(
    model: str,
    system_prompt: str,
    content: str,
    max_tokens: int = 4096,
    temperature: float = 0.0,
    timeout: float = 120.0,
    num_retries: int = 2,
) -> str:
    """Call litellm.completion() with a system + user message. Returns content string.

    Args:
        model: LiteLLM model string (provider/model format).
        system_prompt: Instructions sent as the system message.
        content: User message body.
        max_tokens: Maximum output tokens.
        temperature: Sampling temperature (0 = deterministic).
        timeout: Per-request timeout in seconds.
        num_retries: Number of retries on transient errors (exponential backoff).

    Returns:
        The text content of the first choice ('' if the model returned none).

    Raises:
        TransientProviderError: On API failure or timeout after retries.
    """
    try:
        response = litellm.completion(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            num_retries=num_retries,
        )
        return response.choices[0].message.content or ""
    except Exception as exc:
        raise TransientProviderError(f"completion via '{model}' failed: {exc}") from exc


def embed(
    model: str,
    text: str,
    timeout: float = 30.0,
    api_base: str | None = None,
    dimensions: int | None = None,
    num_retries: int = 2,
) -> list[float]:
    """Call litellm.embedding() for a single text. Returns embedding vector.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        text: Text to embed.
        timeout: Per-request timeout in seconds.
        api_base: Override endpoint (e.g. a local Ollama server).
        dimensions: Requested output width, for models that support it.
        num_retries: Number of retries on transient errors.

    Raises:
        TransientProviderError: On API failure, timeout or a malformed response.
    """
    kwargs: dict = {"model": model, "input": [text], "timeout": timeout, "num_retries": num_retries}
    if api_base:
        kwargs["api_base"] = api_base
    if dimensions is not None:
        kwargs["dimensions"] = dimensions
    try:
        response = litellm.embedding(**kwargs)
        return [float(x) for x in response.data[0]["embedding"]]
    except Exception as exc:
        raise TransientProviderError(f"embedding via '{model}' failed: {exc}") from exc
