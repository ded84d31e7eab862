"""
Service layer for the auto-reply feature.
"""
