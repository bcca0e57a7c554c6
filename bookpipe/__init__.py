"""
bookpipe: background pipelines over long documents.

Jobs narrate or illustrate a document, chapter or scene as many independent
tasks run on a shared worker pool. Each job is tracked through a stable id
with counters, a derived progress percentage and cooperative cancellation.
"""

__version__ = "0.1.0"
