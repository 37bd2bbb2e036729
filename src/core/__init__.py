"""Core domain package for captionsync.

Core contains caption parsing, the processing state machine, retries and
media group synchronization without any Telegram or storage-specific code,
keeping the business logic portable.
"""
