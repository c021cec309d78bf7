"""Chat model construction for the completion service."""

from langchain_core.language_models import BaseChatModel


def create_llm(settings) -> BaseChatModel:
    """
    Create LLM instance based on configured provider.

    Supports:
    - ollama: Free, local models (default)
    - openai: OpenAI chat models (requires API key)
    - anthropic: Claude (requires API key)
    """
    if settings.llm_provider == "ollama":
        from langchain_ollama import ChatOllama
        return ChatOllama(
            model=settings.llm_model,
            base_url=settings.ollama_base_url,
            temperature=settings.llm_temperature,
        )
    elif settings.llm_provider == "openai":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=settings.llm_model,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            timeout=120,
            max_retries=0,  # retries belong to the caller
        )
    elif settings.llm_provider == "anthropic":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(
            model=settings.llm_model,
            api_key=settings.anthropic_api_key,
            max_tokens=4096,
            temperature=settings.llm_temperature,
            timeout=120,
            max_retries=0,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {settings.llm_provider}")
