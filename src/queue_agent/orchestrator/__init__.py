"""Job lifecycle orchestration for the queue agent.

The backend owns the queue and the cross-job retry policy; this package owns
what happens to one job on this machine. Each job gets its own executor
context, a readiness handshake, a start acknowledgment, a hard timeout and a
small budget of local re-dispatches when the executor closes mid-job.

Three event sources race to finish a job: the executor's outcome, the
timeout timer, and crash recovery. ``JobOrchestrator.finalize`` removes the
registry entry under one lock before doing any I/O, so exactly one of them
reports to the backend and updates stats.
"""
