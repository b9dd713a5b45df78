"""
Mailbox intake pipeline.

Watches mailboxes for new messages and runs each one through a queued
classification and extraction pipeline:
- Polls each monitored account for changes since its sync cursor
- Admits every message exactly once
- Classifies and extracts transaction data via the classifier service
- Reports progress to observers as status events
"""
