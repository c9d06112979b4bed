# Middleware package init
"""
Classify API Backend — Middleware Package
=========================================

Middleware Chain (outermost first):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Rate Limit: Reject abusive clients before any processing
    2. Request ID: Correlation ID for logs and error bodies
    3. Logging: Method, path, status and duration, tagged with the request ID
"""
