"""Batch scheduler for remote flow executions.

Tasks are submitted to the remote flow service under a bounded parallelism
budget and observed by polling: round-robin status checks in normal and
singleton mode, incremental event pages in session mode. Task state lives in
memory for the lifetime of the dispatcher.
"""
