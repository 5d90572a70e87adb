"""Dual-loop orchestration of a code-generation Worker and a reviewing Manager.

Both loops are plain single-threaded processes that never talk to each other
directly.  All coordination goes through small documents in the instance
directory (see `agent_duo.orchestrator.state`):

- the Worker owns the task queue, the iteration counter and the review signal;
- the Manager owns the review watermark, review records and skill artifacts;
- the Supervisor owns the liveness records.

Because disk is the only source of truth, any process can be killed and
restarted without losing progress.
"""
