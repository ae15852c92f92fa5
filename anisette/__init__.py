"""anisette/ -- Device-identity header generation for plumesign.

Layer rule: anisette/ imports only core/ + stdlib + third-party libraries.
auth/ and developer/ import from anisette/, not the other way around.
"""
