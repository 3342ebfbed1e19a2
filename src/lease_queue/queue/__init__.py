"""Durable task queue with session-owned leases.

Tasks live in one SQLite table per logical queue. A processing session claims
tasks by writing its ``sessionid`` into their rows with a conditional update,
so no two live sessions ever own the same task. When a session expires or is
deleted, the next reclamation pass hands its pending tasks back to the pool,
or fails them once their attempts run out.
"""
