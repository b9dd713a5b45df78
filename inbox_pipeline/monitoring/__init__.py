"""Scheduled mailbox change detection and stuck-message recovery."""
