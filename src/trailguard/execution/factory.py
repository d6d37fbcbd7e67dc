"""Build the configured execution gateway."""

from ..config import ExecutionConfig
from .base import ExecutionGateway
from .live import LiveExecutionGateway
from .paper import PaperExecutionGateway


def create_gateway(config: ExecutionConfig, force_paper: bool = False) -> ExecutionGateway:
    """
    Create a gateway from config.

    Args:
        config: execution section of config.yaml (plus env)
        force_paper: --paper flag; overrides mode=live
    """
    if force_paper or config.mode == "paper":
        return PaperExecutionGateway(
            starting_balance=config.paper_starting_balance,
            prices=config.paper_prices,
            volatility_pct=config.paper_volatility_pct,
        )
    return LiveExecutionGateway(
        base_url=config.api_url,
        api_token=config.api_token,
        timeout_s=config.timeout_s,
    )
