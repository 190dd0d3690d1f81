"""
Job queue module.
Producer side of the job store.
"""

from workgate.queue.producer import JobProducer

__all__ = ["JobProducer"]
