"""
Auto-reply feature package.

Vertical slice for autonomous inbox triage: domain models, repositories,
services, the scheduler job and the operational API router.
"""
