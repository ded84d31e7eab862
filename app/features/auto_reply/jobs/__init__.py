"""
Job runners for the auto-reply feature.
"""

from .auto_reply_job import auto_reply_job, start_auto_reply_scheduler

__all__ = ["auto_reply_job", "start_auto_reply_scheduler"]
