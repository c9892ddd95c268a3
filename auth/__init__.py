"""auth/ -- Session-security core for SessionGuard.

Tokens (keys, tokens), refresh-token persistence (store, device), revocation,
brute-force mitigation (attempts, captcha) and the orchestration service.

Layer rule: auth/ imports stdlib, third-party libraries and cache/ (for the
KeyedTTLStore interface). It does NOT import from api/ or core/.
api/ and core/ import from auth/, not the other way around.
"""
