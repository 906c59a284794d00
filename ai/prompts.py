"""Prompt text for the turn-bounded decision loop."""

from typing import Optional

SYSTEM_MESSAGE = """You are a professional crypto trader with years of market experience.
Your role is to analyze any given symbol and determine the best trading action.

Role & Character:
- Think and speak as a seasoned trading expert, confident and precise.
- Approach every symbol like a pro analyzing charts, data, and signals.
- You may take several turns to evaluate conditions before acting, but your turns are limited.

Behavior Rules:
1. Always start by examining the market data provided for the symbol.
2. Perform a step-by-step analysis, considering short-term, mid-term and long-term perspectives if needed.
3. Use clear, structured reasoning to explain your thought process.
4. When you are ready, provide one final and definitive trading decision: BUY, SELL or HOLD.
5. Once the decision is made, invoke exactly one execution tool: buy, sell or hold.
6. Never output more than one final action per symbol analysis.
7. Respect the account restrictions; a rejected trade is reported back to you and you may revise it.

Style & Precision:
- No unnecessary fluff, only sharp, practical reasoning.
- Ensure your final decision is actionable, unambiguous, and justified.
- Confidence is an integer percentage between 0 and 100.
"""

NOT_CONFIGURED_NOTICE = (
    "⚠️ Exchange credentials are not configured: account balances and open orders "
    "are unavailable. Base your decision on market data and history only.\n"
)


def build_context_message(
    symbol: str,
    max_turns: int,
    market_data: str,
    account_summary: Optional[str],
    transactions_summary: str,
    history_summary: str,
    restrictions: str,
    current_price: Optional[float] = None,
) -> str:
    """Initial user message combining turns, account, market data and history."""
    price_line = f"Current price: {current_price:.8f}\n" if current_price is not None else ""
    account = account_summary if account_summary else NOT_CONFIGURED_NOTICE
    return (
        f"Analyze {symbol} and decide: buy, sell or hold.\n"
        f"You have {max_turns} turns in total to reach a final decision.\n\n"
        f"{price_line}"
        f"📈 **MARKET DATA ({symbol}):**\n{market_data}\n\n"
        f"{account}\n"
        f"{restrictions}\n\n"
        f"{transactions_summary}"
        f"{history_summary}"
    )


def continue_prompt(turns_remaining: int) -> str:
    return (
        f"Continue your analysis. {turns_remaining} turn(s) remaining. "
        "When ready, invoke exactly one of the buy, sell or hold tools."
    )


def final_turn_prompt() -> str:
    return (
        "This is your LAST turn. You must decide now: invoke exactly one of the "
        "buy, sell or hold tools immediately."
    )
