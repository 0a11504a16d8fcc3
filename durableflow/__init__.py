"""
DurableFlow - A durable, resumable workflow orchestration engine.

Run graphs of typed steps (agents, branches, loops, tool calls, approvals,
guardrails, retrieval, HTTP) to completion, checkpointing after every step
and parking runs that wait on webhooks, approvals or timers.
"""

__version__ = "1.0.0"
