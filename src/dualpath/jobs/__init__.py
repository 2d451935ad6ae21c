"""Durable background job queue for the deep path.

The jobs table is the single authoritative record of background work.
Workers are short-lived, possibly parallel invocations that share no
process memory, so every ownership decision is made by one conditional
``UPDATE ... WHERE status = <expected>`` whose affected row count tells the
caller whether it won. Nothing in this package caches job status between
calls; a worker that needs to know where a job stands reads the row again.
"""
