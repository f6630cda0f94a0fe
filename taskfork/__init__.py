"""
taskfork — Subagent Orchestration for Coding-Assistant Harnesses.

A primary agent delegates bounded tasks to subagents. Each subagent is a
separately supervised child process with its own model, tool permissions and
conversation identity. This package is the engine that sits between the two:
it resolves which model to try, launches and watches the child, turns the
child's streamed events into state, and decides whether a failed attempt is
retried, moved down the model chain, or reported.

Architecture layers (bottom to top):
    1. Configuration and engine context (dependency-injected collaborators)
    2. Model selector resolution (server resolver with local fallback)
    3. Process supervision (one child per attempt)
    4. Stream event processing (NDJSON -> ExecutionState)
    5. Retry coordination (classification, chain advance, backoff)
    6. Orchestrator facade (spawn_subagent)
"""

__version__ = "0.1.0"
