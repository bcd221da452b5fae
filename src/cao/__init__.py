"""Coding agent orchestrator: drives an LLM through staged repository edits."""

from .orchestrator import AgentOrchestrator, SessionOutcome, TaskSubmission

__all__ = ["AgentOrchestrator", "SessionOutcome", "TaskSubmission"]

__version__ = "0.1.0"
