"""Job orchestration and monitoring for remote transcode tasks.

Why polling threads instead of a task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The remote execution system only exposes pull-based status, and each
submitted job maps to exactly one long-running remote task. The work here is
not dispatch but observation: keeping one watcher per running task, turning
ambiguous remote answers (task vanished, access denied, throttled) into a
local state machine, and rebuilding that state after a restart from the
remote cluster and the output bucket.

A broker would add an operational dependency for a single-process tool while
still leaving all of the above as custom logic. One daemon thread per running
job, a per-job locked store and a SQLite snapshot cover this scope.
"""
