"""Execution Gateway interface and HTTP implementation."""

from .base import Confirmation, ExecutionGateway, SimulationResult
from .http import HttpExecutionGateway

__all__ = ["Confirmation", "ExecutionGateway", "SimulationResult", "HttpExecutionGateway"]
