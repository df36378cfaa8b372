# listing_bot/infra/__init__.py
