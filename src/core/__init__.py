"""Core domain package for herald.

Core contains matching, admission control, conversation tracking, and
dispatch logic without any Telegram or storage-specific code, keeping the
business logic portable.
"""
