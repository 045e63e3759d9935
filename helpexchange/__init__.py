"""
Storage and reputation core for the community help-exchange platform.

This package provides a storage contract with interchangeable backends
(transient in-memory, snapshot-to-disk and SQLAlchemy) plus the quota,
ranking, OTP and notification logic layered on top of it.
"""
