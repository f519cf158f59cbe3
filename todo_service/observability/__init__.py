"""Observability for the todo service.

Structured JSON logging through structlog + contextvars, an in-process metric
registry with text exposition, and the ASGI middleware that instruments every
request.
"""
