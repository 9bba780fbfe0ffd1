"""Core domain package for tgmirror.

Core contains event assembly, delivery, dedup bookkeeping and rate limiting
without any Telethon, HTTP or storage-specific code, keeping the ordering and
idempotency logic portable and testable with fakes.
"""
