"""Generation job orchestration and asset publishing.

Submits long-running work to external generation providers, monitors each
job to a terminal state under a timeout, publishes completed results into
durable storage and hands out time-limited access URLs for them.
"""

__version__ = "1.0.0"
