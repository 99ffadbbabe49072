"""Provisioning pipeline stages and the approval protocol."""

from .approval import Approver, ConsoleApprover, Plan
from .runner import run_pipeline

__all__ = ["Approver", "ConsoleApprover", "Plan", "run_pipeline"]
