"""
Session feature module.

Signed session tokens, Appwrite identity exchange and the request gate that
resolves the calling principal.
"""
