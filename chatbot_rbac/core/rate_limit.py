"""
Shared slowapi limiter, keyed on the caller's bearer token.

Attached to ``app.state`` in ``main`` and used by route-level decorators.
"""
from slowapi import Limiter

from chatbot_rbac.features.users.dependencies import get_authorization_header


limiter = Limiter(key_func=get_authorization_header)
