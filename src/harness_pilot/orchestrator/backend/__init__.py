"""Harness executor implementations."""

from harness_pilot.orchestrator.backend.base import (
    AvailabilityOracle,
    HarnessExecutor,
    HarnessRunRequest,
    HarnessRunResult,
    HarnessUnreachableError,
)
from harness_pilot.orchestrator.backend.cli_backend import CliHarnessExecutor, CommandAvailability

__all__ = [
    "AvailabilityOracle",
    "CliHarnessExecutor",
    "CommandAvailability",
    "HarnessExecutor",
    "HarnessRunRequest",
    "HarnessRunResult",
    "HarnessUnreachableError",
]
