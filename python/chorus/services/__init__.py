"""Business logic services.

This package contains the chat turn pipeline and the repository and ledger
functions it runs on. Route handlers call chat_turn; everything else is
called from there or from background tasks.
"""
