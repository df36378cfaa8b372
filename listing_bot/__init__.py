# listing_bot/__init__.py
"""WhatsApp intake bot that turns forwarded car photos into marketplace listings."""
