"""
Pricing calculations and rate management.

Handles token/cost estimation for the supported chat models.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_UP
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import UnknownModel
from .token_counter import TokenEstimate, TokenUsage, count_tokens

logger = logging.getLogger(__name__)

COST_QUANTUM = Decimal("0.000001")

# Community-maintained pricing table (tokencost)
PRICING_TABLE_URL = "https://raw.githubusercontent.com/AgentOps-AI/tokencost/refs/heads/main/pricing_table.md"

# Values the community pricing table uses for "no data"
_UNAVAILABLE = {"nan", "n/a", "unlimited", "--", "-", ""}


class TokenKind(Enum):
    """Which side of a request a piece of text is billed as."""
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing and context limits for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    output_cost_per_1k: Decimal  # Cost per 1K output tokens
    max_prompt_tokens: Optional[int] = None  # None means unknown/unlimited
    max_output_tokens: Optional[int] = None

    def cost_per_1k(self, kind: TokenKind) -> Decimal:
        if kind is TokenKind.INPUT:
            return self.input_cost_per_1k
        return self.output_cost_per_1k


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownModel: If model has no pricing entry
        """
        if model not in self.prices:
            raise UnknownModel(model)
        return self.prices[model]

    def models(self) -> List[str]:
        return sorted(self.prices)

    def __contains__(self, model: str) -> bool:
        return model in self.prices


# Built-in table, used unless a pricing file is supplied at start-up
PRICING_TABLE = PricingTable({
    "claude-3-7-sonnet-20250219": ModelPricing(
        input_cost_per_1k=Decimal("0.003"),
        output_cost_per_1k=Decimal("0.015"),
        max_prompt_tokens=200_000,
        max_output_tokens=8_192,
    ),
    "claude-3-5-sonnet-20241022": ModelPricing(
        input_cost_per_1k=Decimal("0.003"),
        output_cost_per_1k=Decimal("0.015"),
        max_prompt_tokens=200_000,
        max_output_tokens=8_192,
    ),
    "claude-3-5-haiku-20241022": ModelPricing(
        input_cost_per_1k=Decimal("0.0008"),
        output_cost_per_1k=Decimal("0.004"),
        max_prompt_tokens=200_000,
        max_output_tokens=8_192,
    ),
    "claude-3-opus-20240229": ModelPricing(
        input_cost_per_1k=Decimal("0.015"),
        output_cost_per_1k=Decimal("0.075"),
        max_prompt_tokens=200_000,
        max_output_tokens=4_096,
    ),
    "gpt-4o": ModelPricing(
        input_cost_per_1k=Decimal("0.0025"),
        output_cost_per_1k=Decimal("0.01"),
        max_prompt_tokens=128_000,
        max_output_tokens=16_384,
    ),
    "gpt-4o-mini": ModelPricing(
        input_cost_per_1k=Decimal("0.00015"),
        output_cost_per_1k=Decimal("0.0006"),
        max_prompt_tokens=128_000,
        max_output_tokens=16_384,
    ),
})


def _tokens_cost(tokens: int, cost_per_1k: Decimal) -> Decimal:
    return (Decimal(tokens) / Decimal("1000")) * cost_per_1k


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> Decimal:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to read rates from

    Returns:
        Total cost rounded UP to the nearest millionth of a dollar

    Raises:
        UnknownModel: If model is not supported
    """
    pricing = table.get_pricing(model)

    input_cost = _tokens_cost(usage.input_tokens, pricing.input_cost_per_1k)
    output_cost = _tokens_cost(usage.output_tokens, pricing.output_cost_per_1k)

    total_cost = input_cost + output_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)


def estimate(
    text: str,
    model: str,
    kind: TokenKind = TokenKind.INPUT,
    table: PricingTable = PRICING_TABLE,
    encoding: Any = None,
) -> TokenEstimate:
    """Estimate token count and cost of ``text`` for ``model``.

    Pure: the same arguments always produce the same estimate.

    Raises:
        UnknownModel: If model is not supported
    """
    pricing = table.get_pricing(model)
    token_count = count_tokens(text, encoding)
    cost = _tokens_cost(token_count, pricing.cost_per_1k(kind))
    return TokenEstimate(token_count=token_count, cost=cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def parse_pricing_table(markdown: str, model_name: Optional[str] = None) -> PricingTable:
    """Parse a markdown pricing table into a PricingTable.

    Expected columns: model name, prompt cost per 1M tokens, completion cost
    per 1M tokens, max prompt tokens, max output tokens. Rows whose costs are
    unavailable are skipped.

    Args:
        markdown: Markdown document containing the table
        model_name: Only keep rows mentioning this model

    Raises:
        ValueError: If no table header or no usable rows are found
    """
    lines = iter(markdown.splitlines())
    found_header = False
    for line in lines:
        if line.startswith("| Model Name"):
            found_header = True
            next(lines, None)  # separator row
            break

    if not found_header:
        raise ValueError("Could not find the pricing table header in the markdown")

    prices = {}
    for line in lines:
        if not line.startswith("|"):
            break
        if model_name and model_name not in line:
            continue

        columns = [c.strip() for c in line.split("|") if c.strip()]
        if len(columns) < 5:
            continue

        input_cost = _parse_cost(columns[1])
        output_cost = _parse_cost(columns[2])
        if input_cost is None or output_cost is None:
            logger.debug(f"Skipping {columns[0]}: no pricing data")
            continue

        prices[columns[0]] = ModelPricing(
            input_cost_per_1k=input_cost / Decimal("1000"),
            output_cost_per_1k=output_cost / Decimal("1000"),
            max_prompt_tokens=_parse_token_limit(columns[3]),
            max_output_tokens=_parse_token_limit(columns[4]),
        )

    if not prices:
        raise ValueError("No model pricing information found in the table")

    return PricingTable(prices)


def load_pricing_table(path: str) -> PricingTable:
    """Load a markdown pricing table from disk.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file holds no usable table
    """
    table_path = Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"Pricing file not found: {path}")

    table = parse_pricing_table(table_path.read_text(encoding="utf-8"))
    logger.info(f"Loaded pricing for {len(table.prices)} models from {path}")
    return table


def fetch_pricing_table(
    url: str = PRICING_TABLE_URL,
    timeout: float = 10.0,
    fallback: PricingTable = PRICING_TABLE,
) -> PricingTable:
    """Download a markdown pricing table, falling back when it is unusable.

    Args:
        url: Location of the markdown table
        timeout: Seconds to wait for the download
        fallback: Table returned when the download or parse fails

    Returns:
        The parsed remote table, or ``fallback``
    """
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        table = parse_pricing_table(response.text)
    except httpx.HTTPError as e:
        logger.debug(f"Pricing download failed, using built-in prices: {e}")
        return fallback
    except ValueError as e:
        logger.debug(f"Pricing table from {url} is unusable, using built-in prices: {e}")
        return fallback

    logger.info(f"Fetched pricing for {len(table.prices)} models from {url}")
    return table


def _parse_cost(cost_str: str) -> Optional[Decimal]:
    """Parse "$15.00" or "15.00"; None when the table has no value."""
    if cost_str.strip().lower() in _UNAVAILABLE:
        return None
    cleaned = "".join(c for c in cost_str if c.isdigit() or c == ".")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Failed to parse cost value: {cost_str}")


def _parse_token_limit(limit_str: str) -> Optional[int]:
    """Parse "200k", "1M" or "200,000"; None for unlimited/unknown."""
    limit = limit_str.strip().lower()
    if limit in _UNAVAILABLE:
        return None

    multiplier = 1
    if limit.endswith("k"):
        multiplier, limit = 1_000, limit[:-1]
    elif limit.endswith("m"):
        multiplier, limit = 1_000_000, limit[:-1]

    try:
        return int(round(float(limit.replace(",", "")) * multiplier))
    except ValueError:
        raise ValueError(f"Failed to parse token limit: {limit_str}")
