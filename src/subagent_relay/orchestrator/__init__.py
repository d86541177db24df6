"""Task delegation to isolated agent CLI processes.

Every delegated unit of work runs in its own ``pi --mode json`` subprocess,
so each worker gets a fresh context window. The orchestrator parses the
JSON-lines event stream into typed results and runs work in three shapes:

- single: one agent, one task, optionally resuming an earlier session;
- parallel: up to a fixed number of (agent, task) pairs on a bounded pool;
- chain: sequential steps where ``{previous}`` receives the prior output.

Any shape can run as a background job that is polled instead of awaited.
All state lives in one asyncio event loop, so the only guard needed is the
per-session ``in_use`` flag.
"""
