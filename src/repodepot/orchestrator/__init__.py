"""Agent orchestration core: task claims, progress ledger, clarifications, supervision.

Why not a job queue?
~~~~~~~~~~~~~~~~~~~~
Agents here are long-lived CLI processes that pick their own work through HTTP,
report progress step by step, and may stop to ask a human a question. The shared
state is small (a claim status per task, an ordered step list, at most one open
question) and lives in one SQLite file, so claims are plain compare-and-set
updates and the only in-memory state is the per-repository process table.
"""
