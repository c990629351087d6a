"""core/ -- Kernel: configuration and logging setup.

Layer rule: core/ imports only stdlib + third-party libraries.
auth/ and main.py import from core/, not the other way around.
"""
