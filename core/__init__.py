"""core/ -- Kernel of plumesign: settings, errors, domain models, transport.

Layer rule: core/ imports only stdlib + third-party libraries.
"""
