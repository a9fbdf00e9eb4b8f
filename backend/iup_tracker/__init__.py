"""Application package for the individual academic plan (IUP) backend.

This package exposes the service, repository and model modules used by
the FastAPI application and the maintenance scripts. It is intentionally
lightweight; individual modules contain the concrete implementations and
documentation.
"""
