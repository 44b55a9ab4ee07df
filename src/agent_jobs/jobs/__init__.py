"""Background agent jobs tracked through per-job files on disk.

A job is one run of an external assistant CLI. ``start`` writes the job
record and launches a detached worker (``python -m agent_jobs.jobs.worker``);
from then on the worker owns the record and the result. Other commands read
the job directory and check the worker pid; only ``status`` (for a worker that
died silently) and ``kill`` write the record, and never over a terminal state.
There is no channel between a running worker and the CLI besides those files.
"""
