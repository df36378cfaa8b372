# listing_bot/transport/__init__.py
"""HTTP surface: Meta webhook, outbound sender and operational endpoints."""
