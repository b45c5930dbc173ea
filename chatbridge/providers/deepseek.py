from .openai import OpenAIAdapter


class DeepSeekAdapter(OpenAIAdapter):
    """
    Adapter for DeepSeek's OpenAI-compatible API.

    Same wire format as OpenAI; only the endpoint and the token limit
    field differ.
    """

    name = "deepseek"
    default_endpoint = "https://api.deepseek.com/chat/completions"
    max_tokens_field = "max_tokens"
