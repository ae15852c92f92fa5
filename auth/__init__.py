"""auth/ -- GSA authentication package for plumesign.

Key derivation, payload decryption, response decoding and the SRP-6a
handshake. Nothing here prompts or prints; the CLI supplies callbacks.

Layer rule: auth/ imports only core/ + stdlib + third-party libraries
(anisette/ for type checking only). It does NOT import from developer/.
"""
