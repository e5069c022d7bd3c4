"""Core domain package for nestwatch.

Core contains filter matching and the notification dispatcher without any
Telegram or storage-specific code, keeping the business logic portable.
"""
