"""Background job engine: lifecycle, priority queue, workers and stage pipelines.

A submitted job is a durable row in SQLite with a small state machine
(created → queued → running → completed | failed | canceled). Workers pull
queue entries in priority order, hand them to a registered handler (a single
call or a multi-stage workflow) and report the outcome back through the
lifecycle manager, which is the only component allowed to move a job between
states. Every transition is a compare-and-set on the row version, so a
cancellation racing with a worker completion resolves to exactly one
terminal state.

Everything runs inside one process: one logical queue and a small fixed pool
of worker threads. Handlers are the slow, fallible part (model calls, file
scans) and receive a cancellation token they are expected to honour.
"""
