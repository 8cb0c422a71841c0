"""Static model cost table (USD per 1M tokens)."""

from loguru import logger

# provider -> model -> (input, output)
MODEL_COSTS: dict[str, dict[str, tuple[float, float]]] = {
    "anthropic": {
        "claude-opus-4-20250514": (15.0, 75.0),
        "claude-sonnet-4-20250514": (3.0, 15.0),
        "claude-3-7-sonnet-20250219": (3.0, 15.0),
        "claude-3-5-sonnet-20241022": (3.0, 15.0),
        "claude-3-5-haiku-20241022": (0.8, 4.0),
    },
    "openai": {
        "gpt-4o": (2.5, 10.0),
        "gpt-4o-mini": (0.15, 0.6),
        "gpt-4.1": (2.0, 8.0),
        "gpt-4.1-mini": (0.4, 1.6),
        "o3-mini": (1.1, 4.4),
    },
    "perplexity": {
        "sonar-pro": (3.0, 15.0),
        "sonar": (1.0, 1.0),
        "sonar-reasoning-pro": (2.0, 8.0),
    },
    "xai": {
        "grok-3": (3.0, 15.0),
        "grok-3-mini": (0.3, 0.5),
    },
    "openrouter": {},
    "ollama": {},
}


def cost_for_model(provider: str, model: str) -> tuple[float, float]:
    """Get (input, output) cost per 1M tokens; unknown models cost nothing."""
    provider_costs = MODEL_COSTS.get(provider.lower())
    if provider_costs is None:
        logger.debug(f"Provider '{provider}' has no cost data, assuming zero cost")
        return 0.0, 0.0
    costs = provider_costs.get(model)
    if costs is None:
        logger.debug(f"Cost data not found for model '{model}' under '{provider}', assuming zero cost")
        return 0.0, 0.0
    return costs


def calculate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
    """
    Calculate the USD cost of one call.

    Example:
        >>> calculate_cost("anthropic", "claude-sonnet-4-20250514", 1_000_000, 0)
        3.0
    """
    input_cost, output_cost = cost_for_model(provider, model)
    total = (input_tokens / 1_000_000) * input_cost + (output_tokens / 1_000_000) * output_cost
    return round(total, 6)
