"""developer/ -- Authenticated developer-services session for plumesign.

Layer rule: developer/ may import from core/, auth/ and anisette/.
Only main.py imports from developer/.
"""
