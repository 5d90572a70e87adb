"""External agent gateway implementations."""

from agent_duo.orchestrator.backend.base import AgentGateway, GatewayRequest, GatewayResult
from agent_duo.orchestrator.backend.cli_backend import CliAgentGateway

__all__ = [
    "AgentGateway",
    "CliAgentGateway",
    "GatewayRequest",
    "GatewayResult",
]
