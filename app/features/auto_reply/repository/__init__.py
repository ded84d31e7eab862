"""
Persistence for studios, mailbox credentials and thread state.
"""
