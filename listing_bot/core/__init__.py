# listing_bot/core/__init__.py
"""
Provider-agnostic domain logic: session model, state machine, expiry
pipeline and the intake use case.  Infrastructure is reached only through
the protocols in ``ports``.
"""
