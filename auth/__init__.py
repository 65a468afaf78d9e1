"""auth/ -- Authentication and session core for Dispatch.

Issues, verifies and expires the credentials that gate access to the
application: API keys, OAuth2 identities, legacy SSH-key/JWT identities and the
browser sessions derived from them.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
The HTTP layer imports from auth/, never the other way around
(auth/dependencies.py is the single FastAPI-aware module).
"""
