"""
orgauth: identity and multi-tenant authorization core.

Binds an authenticated principal to the organizations it belongs to, keeps
an ActiveSession (active organization plus effective permissions) in sync
with the document store, and mediates invite-code based joining.
"""

__version__ = "0.1.0"
