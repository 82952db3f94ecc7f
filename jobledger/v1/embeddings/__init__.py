"""
Embedding work queue.

Producer side (client, producer) submits source fields to the worker over
HTTP; the worker side (runner, routes) owns the queue rows and the chunk
generations. queries and metrics are read-only.
"""
